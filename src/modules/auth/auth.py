"""JWT authentication for the HTTP API and the realtime socket.

HTTP requests carry a Bearer token in the Authorization header; socket
connections pass the same token as a ``token`` query parameter. Both paths
decode the token here and resolve the user record so that inactive or
deleted accounts are rejected even while their token is still valid.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.database.session import get_db
from src.exceptions import UnauthorizedException
from src.models.user import User

logger = logging.getLogger(__name__)

# FastAPI security scheme — extracts Bearer token from Authorization header
_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthenticatedUser:
    """The identity attached to a request or socket connection."""

    id: uuid.UUID
    email: str
    name: str
    role: str
    office_id: uuid.UUID | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in ("manager", "super_admin")


def create_access_token(user_id: uuid.UUID, expires_minutes: int | None = None) -> str:
    """Issue a signed token for ``user_id``. Used by the login flow and tests."""
    expires = datetime.now(UTC) + timedelta(minutes=expires_minutes or settings.jwt_expiry_minutes)
    claims = {"sub": str(user_id), "exp": expires}
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token. Raises UnauthorizedException on failure."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        return payload
    except JWTError as exc:
        logger.warning("JWT validation failed: %s", exc)
        raise UnauthorizedException("Invalid or expired token") from exc


async def authenticate_token(db: AsyncSession, token: str | None) -> AuthenticatedUser:
    """Resolve a raw token to an active user, or raise UnauthorizedException."""
    if not token:
        raise UnauthorizedException("Authentication required")

    payload = decode_token(token)
    try:
        user_id = uuid.UUID(payload["sub"])
    except (KeyError, ValueError) as exc:
        raise UnauthorizedException("Token is missing required claims") from exc

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        logger.warning("Token presented for unknown or inactive user %s", user_id)
        raise UnauthorizedException("User not found or inactive")

    return AuthenticatedUser(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role.value,
        office_id=user.office_id,
    )


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> AuthenticatedUser:
    """FastAPI dependency that extracts and validates the current user from JWT."""
    if credentials is None:
        raise UnauthorizedException("Authentication required")

    user = await authenticate_token(db, credentials.credentials)
    request.state.user = user
    return user
