import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from filmhub import accounts, config
from filmhub.database import get_db
from filmhub.dependencies import auth_error, bearer, client_info, get_current_session, get_current_user
from filmhub.models import User, UserSession
from filmhub.rate_limiter import RateLimiter
from filmhub.schemas import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProfileUpdate,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    TokenPair,
    TokenRequest,
    UserResponse,
)
from filmhub.security import TokenError, create_token_pair, decode_refresh_token, hash_token, verify_password

router = APIRouter(prefix="/api/auth", tags=["auth"])

logger = logging.getLogger(__name__)

login_limiter = RateLimiter(
    config.LOGIN_RATE_LIMIT, config.LOGIN_RATE_WINDOW_SECONDS, scope="login",
    message="Too many authentication attempts, please try again later.")
register_limiter = RateLimiter(
    config.REGISTER_RATE_LIMIT, config.REGISTER_RATE_WINDOW_SECONDS, scope="register",
    message="Too many registration attempts, please try again later.")
reset_limiter = RateLimiter(
    config.PASSWORD_RESET_RATE_LIMIT, config.PASSWORD_RESET_RATE_WINDOW_SECONDS, scope="password_reset",
    message="Too many password reset requests, please try again later.")


@router.post("/register", status_code=status.HTTP_201_CREATED, dependencies=[Depends(register_limiter)])
def register(payload: RegisterRequest, request: Request, db: Session = Depends(get_db)):
    """Create an account (pending email verification)"""

    # 1. Uniqueness checks
    if db.query(User).filter(User.email == payload.email).first():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "User already exists", "code": "USER_EXISTS"}
        )
    if db.query(User).filter(func.lower(User.username) == payload.username.lower()).first():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "Username already taken", "code": "USERNAME_TAKEN"}
        )

    # 2. Create the user
    initial_status = "pending_verification" if config.REQUIRE_EMAIL_VERIFICATION else "active"
    try:
        user = accounts.create_user(
            db,
            username=payload.username,
            email=payload.email,
            password=payload.password,
            first_name=payload.first_name,
            last_name=payload.last_name,
            display_name=payload.display_name,
            bio=payload.bio,
            status=initial_status,
        )
    except IntegrityError:
        # lost a race against a concurrent registration
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "User already exists", "code": "USER_EXISTS"}
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Registration failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Registration failed", "code": "REGISTRATION_ERROR"}
        )

    # 3. Verification token (delivered out of band)
    if config.REQUIRE_EMAIL_VERIFICATION:
        accounts.create_email_verification(db, user)

    info = client_info(request)
    accounts.log_activity(db, user.id, "user_registered", "User account created",
                          info["ip_address"], info["user_agent"])
    logger.info(f"User registered: user_id={user.id}")

    message = "Account created successfully."
    if config.REQUIRE_EMAIL_VERIFICATION:
        message += " Please check your email to verify your account."

    return {
        "success": True,
        "message": message,
        "user": {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "status": user.status,
        },
    }


@router.post("/login", response_model=LoginResponse, dependencies=[Depends(login_limiter)])
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)):
    """
    Log in with username or email
    - 5 wrong passwords lock the account for 30 minutes
    - a session row stores the hashes of the issued tokens
    """
    info = client_info(request)

    # 1. Find the user
    user = accounts.find_by_identifier(db, payload.identifier)
    if not user:
        raise auth_error("INVALID_CREDENTIALS", "Invalid credentials")

    # 2. Lockout
    accounts.clear_expired_lock(db, user)
    if accounts.is_account_locked(user):
        raise auth_error(
            "ACCOUNT_LOCKED",
            "Account is temporarily locked due to too many failed login attempts",
            status_code=status.HTTP_423_LOCKED,
        )

    # 3. Password
    if not verify_password(payload.password, user.password_hash):
        accounts.handle_failed_login(db, user, info["ip_address"], info["user_agent"])
        raise auth_error("INVALID_CREDENTIALS", "Invalid credentials")

    # 4. Account state
    if user.is_banned:
        raise auth_error("ACCOUNT_BANNED", "Account is banned", status_code=status.HTTP_403_FORBIDDEN)
    if user.status != "active":
        raise auth_error(
            "ACCOUNT_NOT_ACTIVE",
            "Account not activated. Please verify your email address.",
            status_code=status.HTTP_403_FORBIDDEN,
        )

    # 5. Tokens + session
    access_token, refresh_token = create_token_pair(user)
    accounts.create_session(
        db, user, access_token, refresh_token,
        remember_me=payload.remember_me,
        device_info=info["device_info"],
        ip_address=info["ip_address"],
        user_agent=info["user_agent"],
    )
    accounts.record_successful_login(db, user, info["ip_address"], info["user_agent"])
    db.refresh(user)
    logger.info(f"Login: user_id={user.id}")

    return {
        "success": True,
        "access_token": access_token,
        "refresh_token": refresh_token,
        "expires_in": "7d" if payload.remember_me else "1d",
        "user": user,
    }


@router.post("/verify-email", response_model=MessageResponse)
def verify_email(payload: TokenRequest, db: Session = Depends(get_db)):
    """Confirm an email address and activate the account"""

    user = accounts.verify_email_token(db, payload.token)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Invalid or expired verification token", "code": "INVALID_TOKEN"}
        )
    return {"success": True, "message": "Email verified successfully"}


@router.post("/refresh", response_model=TokenPair)
def refresh(payload: RefreshRequest, db: Session = Depends(get_db)):
    """Rotate the token pair of a live session"""

    try:
        decode_refresh_token(payload.refresh_token)
    except TokenError as e:
        raise auth_error(e.code, "Invalid refresh token")

    session = accounts.find_session_by_refresh_hash(db, hash_token(payload.refresh_token))
    if not session:
        raise auth_error("INVALID_SESSION", "Invalid refresh token")

    access_token, refresh_token = create_token_pair(session.user)
    accounts.rotate_session(db, session, access_token, refresh_token)

    return {"success": True, "access_token": access_token, "refresh_token": refresh_token}


@router.post("/logout", response_model=MessageResponse)
def logout(credentials: HTTPAuthorizationCredentials = Depends(bearer), db: Session = Depends(get_db)):
    """Deactivate the session behind the bearer token (no-op without one)"""

    if credentials and credentials.credentials:
        accounts.deactivate_session(db, hash_token(credentials.credentials))
    return {"success": True, "message": "Logged out successfully"}


@router.post("/logout-all", response_model=MessageResponse)
def logout_all(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Deactivate every session of the caller"""

    count = accounts.deactivate_user_sessions(db, user.id)
    logger.info(f"Logout everywhere: user_id={user.id}, sessions={count}")
    return {"success": True, "message": f"Logged out of {count} session(s)"}


@router.get("/me", response_model=UserResponse)
def read_profile(user: User = Depends(get_current_user)):
    return user


@router.put("/me", response_model=UserResponse)
def update_profile(payload: ProfileUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Update profile fields"""

    try:
        return accounts.update_profile(db, user, payload.model_dump(exclude_unset=True))
    except accounts.AccountError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/change-password", response_model=MessageResponse)
def change_password(
    payload: ChangePasswordRequest,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Change password; other sessions are signed out"""

    try:
        accounts.change_password(db, session.user, payload.current_password, payload.new_password,
                                 keep_session_id=session.id)
    except accounts.AccountError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"success": True, "message": "Password changed successfully"}


@router.post("/forgot-password", response_model=MessageResponse, dependencies=[Depends(reset_limiter)])
def forgot_password(payload: ForgotPasswordRequest, request: Request, db: Session = Depends(get_db)):
    """Issue a reset token; the answer is the same whether the email exists or not"""

    user = db.query(User).filter(
        User.email == payload.email.strip().lower(),
        User.deleted_at.is_(None),
    ).first()
    if user and not user.is_banned:
        info = client_info(request)
        accounts.create_password_reset_token(db, user, info["ip_address"], info["user_agent"])
        logger.info(f"Password reset requested: user_id={user.id}")

    return {"success": True, "message": "If that email is registered, a reset link has been sent."}


@router.post("/reset-password", response_model=MessageResponse)
def reset_password(payload: ResetPasswordRequest, request: Request, db: Session = Depends(get_db)):
    """Set a new password with a reset token"""

    info = client_info(request)
    try:
        user_id = accounts.reset_password(db, payload.token, payload.new_password,
                                          info["ip_address"], info["user_agent"])
    except SQLAlchemyError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Password reset failed"
        )

    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Invalid or expired reset token", "code": "INVALID_TOKEN"}
        )
    return {"success": True, "message": "Password reset successfully"}


@router.get("/sessions", response_model=List[SessionResponse])
def list_sessions(session: UserSession = Depends(get_current_session), db: Session = Depends(get_db)):
    """Active sessions of the caller"""

    sessions = accounts.list_active_sessions(db, session.user_id)
    return [
        SessionResponse.model_validate(s).model_copy(update={"current": s.id == session.id})
        for s in sessions
    ]
