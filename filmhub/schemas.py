# schemas.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from filmhub.security import USERNAME_PATTERN, password_problems


def _check_password(value: str) -> str:
    problems = password_problems(value)
    if problems:
        raise ValueError("Password must contain " + ", ".join(problems))
    return value


# ── Auth ──────────────────────────────────────────────────

class RegisterRequest(BaseModel):
    username: str
    email: EmailStr
    password: str
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    display_name: Optional[str] = Field(None, max_length=100)
    bio: Optional[str] = Field(None, max_length=2000)

    @field_validator("username")
    @classmethod
    def check_username(cls, value: str) -> str:
        value = value.strip()
        if not USERNAME_PATTERN.match(value):
            raise ValueError("Username must be 3-50 characters and contain only letters, numbers, and underscores")
        return value

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("password")
    @classmethod
    def check_password(cls, value: str) -> str:
        return _check_password(value)


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1)  # username or email
    password: str = Field(..., min_length=1)
    remember_me: bool = False


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def check_password(cls, value: str) -> str:
        return _check_password(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def check_password(cls, value: str) -> str:
        return _check_password(value)


class UserPublic(BaseModel):
    id: int
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    class Config:
        from_attributes = True


class UserResponse(UserPublic):
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None
    role: str
    status: str
    email_verified: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = Field(None, max_length=100)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    bio: Optional[str] = Field(None, max_length=2000)
    location: Optional[str] = Field(None, max_length=255)
    website: Optional[str] = Field(None, max_length=500)
    avatar_url: Optional[str] = Field(None, max_length=1000)


class LoginResponse(BaseModel):
    success: bool = True
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: str
    user: UserResponse


class TokenPair(BaseModel):
    success: bool = True
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class SessionResponse(BaseModel):
    id: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    expires_at: datetime
    current: bool = False

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    success: bool = True
    message: str


# ── Films ─────────────────────────────────────────────────

class FilmBase(BaseModel):
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    original_filename: str
    file_path: str
    file_size: int
    content_type: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration: Optional[int] = None


class Film(FilmBase):
    id: int
    owner_id: int
    status: str
    moderation_status: str
    is_private: bool
    view_count: int
    uploaded_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        # ORM mode: build from SQLAlchemy objects
        from_attributes = True


class FilmDetail(Film):
    """Film with its social counters."""
    uploader: Optional[UserPublic] = None
    like_count: int = 0
    comment_count: int = 0
    rating_count: int = 0
    average_rating: Optional[float] = None


class FilmAdmin(Film):
    filename: str
    moderation_notes: Optional[str] = None
    moderated_by: Optional[int] = None
    moderated_at: Optional[datetime] = None
    flag_count: int = 0


class FilmListResponse(BaseModel):
    total: int
    films: List[FilmDetail]


class FilmUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    category: Optional[str] = Field(None, max_length=50)
    thumbnail_url: Optional[str] = Field(None, max_length=1000)
    is_private: Optional[bool] = None

    @field_validator("title", "is_private")
    @classmethod
    def not_null(cls, value):
        # omitted is fine, an explicit null is not
        if value is None:
            raise ValueError("Field cannot be null")
        return value


class UploadLimits(BaseModel):
    daily_limit: int
    used: int
    remaining: int
    next_reset: datetime
    can_upload: bool


# ── Likes ─────────────────────────────────────────────────

class LikeStatus(BaseModel):
    """Like state for the calling user."""
    video_id: int
    like_count: int
    is_liked: bool


# ── Comments ──────────────────────────────────────────────

class CommentCreate(BaseModel):
    video_id: int
    content: str = Field(..., min_length=1, max_length=2000)
    parent_id: Optional[int] = None

    @field_validator("content")
    @classmethod
    def strip_content(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Comment must be between 1 and 2000 characters")
        return value


class CommentUpdate(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)

    @field_validator("content")
    @classmethod
    def strip_content(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Comment must be between 1 and 2000 characters")
        return value


class CommentResponse(BaseModel):
    id: int
    video_id: int
    user_id: int
    parent_id: Optional[int] = None
    content: str
    is_edited: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    author: Optional[UserPublic] = None
    like_count: int = 0
    dislike_count: int = 0
    reply_count: int = 0
    user_reaction: Optional[str] = None

    class Config:
        from_attributes = True


class CommentListResponse(BaseModel):
    total: int
    comments: List[CommentResponse]


class ReactionRequest(BaseModel):
    reaction_type: str

    @field_validator("reaction_type")
    @classmethod
    def check_reaction(cls, value: str) -> str:
        if value not in ("like", "dislike"):
            raise ValueError("Reaction type must be like or dislike")
        return value


# ── Ratings ───────────────────────────────────────────────

class RatingUpsert(BaseModel):
    video_id: int
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=1000)


class RatingResponse(BaseModel):
    id: int
    video_id: int
    user_id: int
    rating: int
    review: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    user: Optional[UserPublic] = None

    class Config:
        from_attributes = True


class MyRatingResponse(RatingResponse):
    film_title: Optional[str] = None


class RatingStats(BaseModel):
    video_id: int
    total_ratings: int
    average_rating: Optional[float] = None
    five_star: int = 0
    four_star: int = 0
    three_star: int = 0
    two_star: int = 0
    one_star: int = 0


class RatingListResponse(BaseModel):
    ratings: List[RatingResponse]
    skip: int
    limit: int
    has_more: bool


# ── Watch history ─────────────────────────────────────────

class WatchRecord(BaseModel):
    video_id: int
    watch_duration: int = Field(0, ge=0)  # seconds
    completed: bool = False


class WatchHistoryEntry(BaseModel):
    id: int
    video_id: int
    watch_duration: int
    completed: bool
    progress_percent: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    video: Optional[Film] = None

    class Config:
        from_attributes = True


class WatchHistoryListResponse(BaseModel):
    total: int
    skip: int
    limit: int
    has_more: bool
    history: List[WatchHistoryEntry]


class WatchStats(BaseModel):
    total_watched: int
    completed_count: int
    total_watch_time: int
    average_watch_time: Optional[float] = None
    days_active: int


# ── Playlists ─────────────────────────────────────────────

class PlaylistCreate(BaseModel):
    title: str = Field(..., max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    is_private: bool = False

    @field_validator("title")
    @classmethod
    def check_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Title is required")
        return value


class PlaylistUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    is_private: Optional[bool] = None

    @field_validator("title")
    @classmethod
    def check_title(cls, value):
        if value is None or not value.strip():
            raise ValueError("Title is required")
        return value.strip()

    @field_validator("is_private")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("Field cannot be null")
        return value


class PlaylistResponse(BaseModel):
    id: int
    user_id: int
    title: str
    description: Optional[str] = None
    is_private: bool
    video_count: int = 0
    owner: Optional[UserPublic] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PlaylistVideoAdd(BaseModel):
    video_id: int


class PlaylistReorder(BaseModel):
    """Every film of the playlist, in the new order."""
    video_ids: List[int] = Field(..., min_length=1)


class PlaylistVideo(BaseModel):
    position: int
    added_at: Optional[datetime] = None
    video: Film

    class Config:
        from_attributes = True


class PlaylistVideosResponse(BaseModel):
    total: int
    skip: int
    limit: int
    has_more: bool
    videos: List[PlaylistVideo]


# ── Profiles ──────────────────────────────────────────────

class ProfileResponse(UserPublic):
    bio: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None
    created_at: Optional[datetime] = None
    film_count: int = 0
    playlist_count: int = 0


# ── Admin ─────────────────────────────────────────────────

class ModerationDecision(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)
    notes: Optional[str] = Field(None, max_length=5000)


class BanRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class RoleUpdate(BaseModel):
    role: str

    @field_validator("role")
    @classmethod
    def check_role(cls, value: str) -> str:
        if value not in ("user", "moderator", "admin"):
            raise ValueError("Role must be user, moderator or admin")
        return value


class AdminUserResponse(UserResponse):
    is_banned: bool
    ban_reason: Optional[str] = None
    banned_at: Optional[datetime] = None
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    login_count: int = 0
    video_count: int = 0


class AdminFilmUpdate(FilmUpdate):
    status: Optional[str] = None

    @field_validator("status")
    @classmethod
    def check_status(cls, value):
        if value not in ("uploading", "processing", "ready", "error"):
            raise ValueError("Invalid status")
        return value


class BulkFilmAction(BaseModel):
    action: str
    video_ids: List[int] = Field(..., min_length=1)
    status: Optional[str] = None

    @field_validator("action")
    @classmethod
    def check_action(cls, value: str) -> str:
        if value not in ("delete", "update_status"):
            raise ValueError("Action must be delete or update_status")
        return value

    @field_validator("status")
    @classmethod
    def check_status(cls, value):
        if value is not None and value not in ("uploading", "processing", "ready", "error"):
            raise ValueError("Invalid status")
        return value


class AdminActivityResponse(BaseModel):
    id: int
    admin_id: int
    action_type: str
    target_type: str
    target_id: Optional[int] = None
    details: Optional[dict] = None
    ip_address: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
