# dependencies.py
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from filmhub import accounts
from filmhub.database import get_db
from filmhub.models import User, UserSession
from filmhub.security import TokenError, decode_access_token, hash_token

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)

STAFF_ROLES = ("admin", "moderator")


def auth_error(code: str, message: str, status_code: int = status.HTTP_401_UNAUTHORIZED):
    return HTTPException(
        status_code=status_code,
        detail={"error": message, "code": code},
        headers={"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None,
    )


def client_info(request: Request) -> dict:
    """IP / user agent / device details recorded with sessions and activity."""
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent", "")
    return {
        "ip_address": ip_address,
        "user_agent": user_agent,
        "device_info": {
            "ip": ip_address,
            "user_agent": user_agent,
            "accept_language": request.headers.get("accept-language"),
        },
    }


def _resolve_session(db: Session, token: str, request: Request) -> UserSession:
    # Raises TokenError for bad / expired JWTs
    decode_access_token(token)

    session = accounts.find_active_session(db, hash_token(token))
    if not session:
        raise auth_error("INVALID_SESSION", "Invalid or expired session")

    accounts.touch_session(db, session, request.client.host if request.client else None)
    return session


def get_current_session(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
) -> UserSession:
    """Bearer token -> verified JWT -> active server-side session."""
    if not credentials or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise auth_error("NO_TOKEN", "Access denied. Token required.")

    try:
        return _resolve_session(db, credentials.credentials, request)
    except TokenError as e:
        raise auth_error(e.code, e.message)


def get_current_user(session: UserSession = Depends(get_current_session)) -> User:
    return session.user


def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
) -> Optional[User]:
    """Like get_current_user, but anonymous requests (or bad tokens) yield None."""
    if not credentials or not credentials.credentials:
        return None
    try:
        return _resolve_session(db, credentials.credentials, request).user
    except (TokenError, HTTPException):
        return None


def require_roles(*roles: str):
    def checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"error": "Insufficient permissions", "required": list(roles), "current": user.role},
            )
        return user
    return checker


# Admin dashboard: admins and moderators
require_admin = require_roles(*STAFF_ROLES)

# User management (bans, roles): admins only
require_strict_admin = require_roles("admin")


def is_staff(user: Optional[User]) -> bool:
    return user is not None and user.role in STAFF_ROLES
