"""
security.py — Password hashing, session tokens, and the shared rate limiter.

All sensitive operations (password hashing, JWT) live here so the rest of
the codebase never handles raw secrets directly. The shared rate limiter is
defined here so routers can decorate endpoints without importing main.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import jwt
from passlib.context import CryptContext
from slowapi import Limiter
from slowapi.util import get_remote_address

from config import settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


# ─────────────────────────────────────────────
# Password Hashing
# ─────────────────────────────────────────────

def hash_password(password: str) -> str:
    """Return a bcrypt hash of the given plain-text password."""
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str | None) -> bool:
    """Return True if plain-text password matches the bcrypt hash.

    Users without a stored hash can never log in with a password.
    """
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


# ─────────────────────────────────────────────
# JWT Session Tokens
# ─────────────────────────────────────────────

def create_access_token(
    user_id: str,
    extra_claims: dict[str, Any] | None = None,
) -> str:
    """Create a signed session JWT for the given user.

    Args:
        user_id: The user's UUID string.
        extra_claims: Optional additional claims to embed (e.g. email).

    Returns:
        Signed JWT string.
    """
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": user_id,
        "exp": now + timedelta(hours=settings.access_token_expire_hours),
        "iat": now,
        "type": "access",
    }
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def issue_session_token(user_id: str, email: str) -> str:
    """Session credential handed to a claimant after a successful claim or login."""
    return create_access_token(user_id, {"email": email})


def verify_token(token: str) -> dict[str, Any]:
    """Decode and validate a JWT, returning the full payload.

    Raises:
        JWTError: if the token is invalid, expired, or tampered with.
    """
    return jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm],
    )


# ─────────────────────────────────────────────
# Secure Random Generation
# ─────────────────────────────────────────────

def generate_secure_token(length: int = 32) -> str:
    """Return a URL-safe cryptographically secure random token."""
    return secrets.token_urlsafe(length)


# ─────────────────────────────────────────────
# Rate Limiting
# ─────────────────────────────────────────────

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit_general])
