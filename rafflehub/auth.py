"""Admin credential checks and signed session tokens."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from .errors import AuthenticationError, ValidationError
from .models import Admin
from .validation import require_text

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"
INVALID_CREDENTIALS = "Invalid email/username or password"


@dataclass(frozen=True)
class SessionClaims:
    """Identity carried by a verified session token."""

    username: str
    role: str
    expires_at: datetime


def hash_password(password: str) -> str:
    """Return a salted hash suitable for ``Admin.password_hash``."""
    if not password:
        raise ValidationError("Password must not be empty", field="password")
    return generate_password_hash(password)


def create_admin(
    session: Session,
    username: str,
    password: str,
    email: Optional[str] = None,
    role: str = "admin",
) -> Admin:
    """Persist a new administrator with a hashed password."""
    admin = Admin(
        username=username,
        email=email,
        password_hash=hash_password(password),
        role=role,
    )
    session.add(admin)
    session.flush()
    return admin


def authenticate(session: Session, identifier: str, password: str) -> Admin:
    """Return the admin matching ``identifier`` (email or username) and ``password``.

    Raises
    ------
    ValidationError
        If either value is missing.
    AuthenticationError
        If no admin matches or the password is wrong. Both cases share one
        message so callers cannot probe which accounts exist.
    """
    if not identifier or not password:
        raise ValidationError("Email/username and password are required")
    identifier = require_text(identifier, "emailOrUsername", label="Email/username")
    if not isinstance(password, str):
        raise ValidationError("Password must be a string", field="password")

    admin = Admin.get_by_identifier(session, identifier)
    if admin is None or not check_password_hash(admin.password_hash, password):
        logger.info("Admin login rejected")
        raise AuthenticationError(INVALID_CREDENTIALS)
    return admin


def issue_session_token(
    admin: Admin,
    secret: str,
    ttl_seconds: int = 3600,
    *,
    now: Optional[datetime] = None,
) -> str:
    """Sign a time-bounded token carrying the admin username and role."""
    issued_at = now or datetime.now(timezone.utc)
    payload = {
        "sub": admin.username,
        "role": admin.role or "admin",
        "iat": issued_at,
        "exp": issued_at + timedelta(seconds=ttl_seconds),
    }
    return jwt.encode(payload, secret, algorithm=TOKEN_ALGORITHM)


def verify_session_token(token: Optional[str], secret: str) -> SessionClaims:
    """Decode and check a session token.

    Raises
    ------
    AuthenticationError
        If the token is missing, malformed, expired or signed with another key.
    """
    if not token:
        raise AuthenticationError("Authentication required")
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[TOKEN_ALGORITHM],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("Session expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthenticationError("Invalid session token") from e

    return SessionClaims(
        username=payload["sub"],
        role=payload.get("role", "admin"),
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


def bearer_token(authorization_header: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization_header:
        return None
    scheme, _, token = authorization_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
