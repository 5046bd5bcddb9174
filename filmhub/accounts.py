# accounts.py
"""
User accounts: creation, login lockout, server-side sessions,
email verification and password reset.

Routers call these helpers and own the HTTP side; every function here
works on the SQLAlchemy session it is given and commits its own writes.
"""
import logging
from datetime import timedelta

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from filmhub import config
from filmhub.models import EmailVerification, PasswordResetToken, User, UserActivity, UserSession
from filmhub.security import as_utc, generate_url_token, hash_password, hash_token, utcnow, verify_password

logger = logging.getLogger(__name__)

PROFILE_FIELDS = (
    "first_name", "last_name", "display_name", "bio",
    "location", "website", "avatar_url",
)


class AccountError(Exception):
    """Raised for account operations that cannot proceed."""


# ── Users ─────────────────────────────────────────────────

def create_user(db: Session, *, username: str, email: str, password: str,
                first_name=None, last_name=None, display_name=None, bio=None,
                role: str = "user", status: str = "pending_verification") -> User:
    if not display_name:
        display_name = f"{first_name or ''} {last_name or ''}".strip() or username

    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        display_name=display_name,
        bio=bio,
        role=role,
        status=status,
        email_verified=status == "active",
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def find_by_identifier(db: Session, identifier: str):
    """Email or username lookup, skipping soft-deleted accounts."""
    identifier = (identifier or "").strip()
    return db.query(User).filter(
        or_(User.email == identifier.lower(), User.username == identifier),
        User.deleted_at.is_(None),
    ).first()


def get_user(db: Session, user_id: int):
    return db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()


def get_user_by_username(db: Session, username: str):
    return db.query(User).filter(
        func.lower(User.username) == username.lower(),
        User.deleted_at.is_(None),
    ).first()


def update_profile(db: Session, user: User, updates: dict) -> User:
    changed = {k: v for k, v in updates.items() if k in PROFILE_FIELDS and v is not None}
    if not changed:
        raise AccountError("No valid fields to update")

    for key, value in changed.items():
        setattr(user, key, value)
    db.commit()
    db.refresh(user)
    return user


def ensure_admin(db: Session):
    """Create the bootstrap admin from config if it does not exist yet."""
    if not (config.ADMIN_USERNAME and config.ADMIN_EMAIL and config.ADMIN_PASSWORD):
        return None

    existing = find_by_identifier(db, config.ADMIN_EMAIL) or find_by_identifier(db, config.ADMIN_USERNAME)
    if existing:
        return existing

    admin = create_user(
        db,
        username=config.ADMIN_USERNAME,
        email=config.ADMIN_EMAIL.lower(),
        password=config.ADMIN_PASSWORD,
        display_name="Administrator",
        role="admin",
        status="active",
    )
    logger.info(f"Bootstrap admin created: user_id={admin.id}")
    return admin


def log_activity(db: Session, user_id: int, activity_type: str, description=None,
                 ip_address=None, user_agent=None, success: bool = True, commit: bool = True):
    db.add(UserActivity(
        user_id=user_id,
        activity_type=activity_type,
        description=description,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:500],
        success=success,
    ))
    if commit:
        db.commit()


# ── Lockout ───────────────────────────────────────────────

def is_account_locked(user: User) -> bool:
    locked_until = as_utc(user.account_locked_until)
    return locked_until is not None and locked_until > utcnow()


def clear_expired_lock(db: Session, user: User) -> None:
    """An elapsed lock starts the counter over."""
    if user.account_locked_until is not None and not is_account_locked(user):
        user.account_locked_until = None
        user.failed_login_attempts = 0
        db.commit()


def lock_account(db: Session, user: User, minutes: int = None) -> None:
    minutes = minutes or config.LOCKOUT_MINUTES
    user.account_locked_until = utcnow() + timedelta(minutes=minutes)
    log_activity(db, user.id, "account_locked", f"Account locked for {minutes} minutes", commit=False)
    db.commit()
    logger.warning(f"Account locked: user_id={user.id}, minutes={minutes}")


def handle_failed_login(db: Session, user: User, ip_address=None, user_agent=None) -> int:
    user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
    user.last_failed_login = utcnow()
    attempts = user.failed_login_attempts

    log_activity(
        db, user.id, "login_failed",
        f"Failed login attempt ({attempts}/{config.MAX_FAILED_LOGINS})",
        ip_address, user_agent, success=False, commit=False,
    )
    db.commit()
    logger.info(f"Failed login: user_id={user.id}, attempts={attempts}")

    if attempts >= config.MAX_FAILED_LOGINS:
        lock_account(db, user)
    return attempts


def record_successful_login(db: Session, user: User, ip_address=None, user_agent=None) -> None:
    user.last_login = utcnow()
    user.login_count = (user.login_count or 0) + 1
    user.failed_login_attempts = 0
    user.account_locked_until = None
    log_activity(db, user.id, "login_success", "User logged in successfully",
                 ip_address, user_agent, commit=False)
    db.commit()


# ── Sessions ──────────────────────────────────────────────

def create_session(db: Session, user: User, access_token: str, refresh_token: str, *,
                   remember_me: bool = False, device_info=None,
                   ip_address=None, user_agent=None) -> UserSession:
    if remember_me:
        lifetime = timedelta(days=config.REMEMBER_ME_TTL_DAYS)
    else:
        lifetime = timedelta(hours=config.SESSION_TTL_HOURS)

    session = UserSession(
        user_id=user.id,
        token_hash=hash_token(access_token),
        refresh_token_hash=hash_token(refresh_token),
        device_info=device_info,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:500],
        expires_at=utcnow() + lifetime,
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def _active_sessions(db: Session):
    return db.query(UserSession).join(User, UserSession.user_id == User.id).filter(
        UserSession.is_active.is_(True),
        UserSession.expires_at > utcnow(),
        User.deleted_at.is_(None),
        User.is_banned.is_(False),
    )


def find_active_session(db: Session, token_hash: str):
    return _active_sessions(db).filter(UserSession.token_hash == token_hash).first()


def find_session_by_refresh_hash(db: Session, refresh_hash: str):
    return _active_sessions(db).filter(UserSession.refresh_token_hash == refresh_hash).first()


def list_active_sessions(db: Session, user_id: int):
    return _active_sessions(db).filter(UserSession.user_id == user_id).order_by(
        UserSession.created_at.desc()).all()


def touch_session(db: Session, session: UserSession, ip_address=None) -> None:
    session.last_activity = utcnow()
    if ip_address:
        session.ip_address = ip_address
    db.commit()


def rotate_session(db: Session, session: UserSession, access_token: str, refresh_token: str) -> None:
    session.token_hash = hash_token(access_token)
    session.refresh_token_hash = hash_token(refresh_token)
    session.last_activity = utcnow()
    db.commit()


def deactivate_session(db: Session, token_hash: str) -> bool:
    session = db.query(UserSession).filter(UserSession.token_hash == token_hash).first()
    if not session or not session.is_active:
        return False
    session.is_active = False
    db.commit()
    return True


def deactivate_user_sessions(db: Session, user_id: int, keep_session_id: int = None,
                             commit: bool = True) -> int:
    query = db.query(UserSession).filter(
        UserSession.user_id == user_id,
        UserSession.is_active.is_(True),
    )
    if keep_session_id is not None:
        query = query.filter(UserSession.id != keep_session_id)

    count = 0
    for session in query.all():
        session.is_active = False
        count += 1
    if commit:
        db.commit()
    return count


# ── Email verification ────────────────────────────────────

def create_email_verification(db: Session, user: User) -> str:
    """Returns the raw token; only its hash is persisted."""
    token = generate_url_token()
    db.add(EmailVerification(
        user_id=user.id,
        email=user.email,
        token_hash=hash_token(token),
        expires_at=utcnow() + timedelta(hours=config.EMAIL_VERIFICATION_TTL_HOURS),
    ))
    db.commit()
    logger.info(f"Email verification issued: user_id={user.id}")
    return token


def verify_email_token(db: Session, token: str):
    verification = db.query(EmailVerification).filter(
        EmailVerification.token_hash == hash_token(token),
        EmailVerification.verified.is_(False),
        EmailVerification.expires_at > utcnow(),
    ).first()
    if not verification:
        return None

    verification.verified = True
    verification.verified_at = utcnow()

    user = get_user(db, verification.user_id)
    if user and user.email == verification.email:
        user.email_verified = True
        if user.status == "pending_verification":
            user.status = "active"
    db.commit()
    return user


# ── Passwords ─────────────────────────────────────────────

def change_password(db: Session, user: User, current_password: str, new_password: str,
                    keep_session_id: int = None) -> None:
    if not verify_password(current_password, user.password_hash):
        raise AccountError("Current password is incorrect")

    user.password_hash = hash_password(new_password)
    user.password_changed_at = utcnow()
    deactivate_user_sessions(db, user.id, keep_session_id=keep_session_id, commit=False)
    log_activity(db, user.id, "password_changed", "Password changed", commit=False)
    db.commit()


def create_password_reset_token(db: Session, user: User, ip_address=None, user_agent=None) -> str:
    token = generate_url_token()
    db.add(PasswordResetToken(
        user_id=user.id,
        token_hash=hash_token(token),
        expires_at=utcnow() + timedelta(minutes=config.PASSWORD_RESET_TTL_MINUTES),
        ip_address=ip_address,
        user_agent=(user_agent or "")[:500],
    ))
    log_activity(db, user.id, "password_reset_requested", "Password reset token created",
                 ip_address, user_agent, commit=False)
    db.commit()
    return token


def reset_password(db: Session, token: str, new_password: str, ip_address=None, user_agent=None):
    """
    Consume a reset token. The password update, token consumption and
    session revocation commit together or not at all.
    Returns the user id, or None when the token is unknown/used/expired.
    """
    reset = db.query(PasswordResetToken).filter(
        PasswordResetToken.token_hash == hash_token(token),
        PasswordResetToken.used.is_(False),
        PasswordResetToken.expires_at > utcnow(),
    ).first()
    if not reset:
        return None

    user = get_user(db, reset.user_id)
    if not user:
        return None

    password_hash = hash_password(new_password)
    try:
        user.password_hash = password_hash
        user.password_changed_at = utcnow()
        user.failed_login_attempts = 0
        user.account_locked_until = None

        reset.used = True
        reset.used_at = utcnow()

        deactivate_user_sessions(db, user.id, commit=False)
        log_activity(db, user.id, "password_reset", "Password reset successfully",
                     ip_address, user_agent, commit=False)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Password reset rolled back: user_id={reset.user_id}")
        raise

    logger.info(f"Password reset: user_id={user.id}")
    return user.id


# ── Maintenance ───────────────────────────────────────────

def cleanup_expired_tokens(db: Session) -> int:
    """Delete expired sessions, verifications and reset tokens."""
    now = utcnow()
    deleted = 0
    deleted += db.query(UserSession).filter(UserSession.expires_at <= now).delete(synchronize_session=False)
    deleted += db.query(EmailVerification).filter(
        EmailVerification.expires_at <= now).delete(synchronize_session=False)
    deleted += db.query(PasswordResetToken).filter(
        PasswordResetToken.expires_at <= now).delete(synchronize_session=False)
    db.commit()
    logger.info(f"Expired tokens removed: {deleted}")
    return deleted
