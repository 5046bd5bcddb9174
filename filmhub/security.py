# security.py
import hashlib
import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt

from filmhub import config

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{3,50}$")


class TokenError(Exception):
    """JWT could not be verified."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ── Passwords ─────────────────────────────────────────────

def hash_password(password: str) -> str:
    return bcrypt.hashpw(
        password.encode("utf-8"),
        bcrypt.gensalt(rounds=config.BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def password_problems(password: str) -> list:
    """Returns the list of unmet password rules (empty when acceptable)."""
    problems = []
    if len(password) < 8:
        problems.append("at least 8 characters")
    if len(password.encode("utf-8")) > 72:
        # bcrypt input limit
        problems.append("at most 72 bytes")
    if not re.search(r"[a-z]", password):
        problems.append("a lowercase letter")
    if not re.search(r"[A-Z]", password):
        problems.append("an uppercase letter")
    if not re.search(r"\d", password):
        problems.append("a number")
    return problems


# ── Opaque tokens ─────────────────────────────────────────

def hash_token(token: str) -> str:
    """SHA-256 hex digest; only this is stored server side."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_url_token() -> str:
    """Random token for email verification / password reset links."""
    return secrets.token_hex(32)


# ── JWT ───────────────────────────────────────────────────

def _encode(user, token_type: str, secret: str, ttl: timedelta) -> str:
    now = utcnow()
    payload = {
        "sub": str(user.id),
        "username": user.username,
        "role": user.role,
        "type": token_type,
        "jti": uuid.uuid4().hex,
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(payload, secret, algorithm=config.JWT_ALGORITHM)


def create_access_token(user) -> str:
    return _encode(user, "access", config.JWT_SECRET,
                   timedelta(minutes=config.ACCESS_TOKEN_TTL_MINUTES))


def create_refresh_token(user) -> str:
    return _encode(user, "refresh", config.JWT_REFRESH_SECRET,
                   timedelta(days=config.REFRESH_TOKEN_TTL_DAYS))


def create_token_pair(user) -> tuple:
    return create_access_token(user), create_refresh_token(user)


def _decode(token: str, secret: str, expected_type: str) -> dict:
    try:
        payload = jwt.decode(token, secret, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise TokenError("TOKEN_EXPIRED", "Token expired")
    except jwt.InvalidTokenError:
        raise TokenError("INVALID_TOKEN", "Invalid token")

    if payload.get("type") != expected_type or not payload.get("sub"):
        raise TokenError("INVALID_TOKEN", "Invalid token type")
    return payload


def decode_access_token(token: str) -> dict:
    return _decode(token, config.JWT_SECRET, "access")


def decode_refresh_token(token: str) -> dict:
    return _decode(token, config.JWT_REFRESH_SECRET, "refresh")
