from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from filmhub.database import get_db
from filmhub.dependencies import get_optional_user
from filmhub.models import Playlist, User, Video
from filmhub.routers.films import film_detail, visible_to
from filmhub.routers.playlists import get_profile_user_or_404, user_playlists
from filmhub.schemas import FilmListResponse, ProfileResponse

router = APIRouter(prefix="/api/profile", tags=["profile"])


@router.get("/{username}", response_model=ProfileResponse)
def get_profile(
    username: str,
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    """
    Public profile
    - counts only what the caller is allowed to see
    - no email, role or account state
    """

    owner = get_profile_user_or_404(db, username)

    film_count = db.query(func.count(Video.id)).filter(
        Video.owner_id == owner.id, visible_to(user)).scalar()
    playlists = db.query(func.count(Playlist.id)).filter(Playlist.user_id == owner.id)
    if user is None or user.id != owner.id:
        playlists = playlists.filter(Playlist.is_private.is_(False))

    data = ProfileResponse.model_validate(owner).model_dump()
    data.update(film_count=film_count or 0, playlist_count=playlists.scalar() or 0)
    return data


@router.get("/{username}/films", response_model=FilmListResponse)
def get_profile_films(
    username: str,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    """The user's films, newest first"""

    owner = get_profile_user_or_404(db, username)

    query = db.query(Video).filter(Video.owner_id == owner.id, visible_to(user))
    total = query.count()
    videos = query.order_by(Video.uploaded_at.desc(), Video.id.desc()).offset(skip).limit(limit).all()
    return {
        "total": total,
        "films": [film_detail(db, video) for video in videos]
    }


@router.get("/{username}/playlists")
def get_profile_playlists(
    username: str,
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    owner = get_profile_user_or_404(db, username)
    return {"playlists": user_playlists(db, owner, user)}
