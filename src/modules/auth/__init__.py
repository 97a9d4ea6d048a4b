"""Auth module — JWT identity for HTTP requests and socket connections."""

from src.modules.auth.auth import (
    AuthenticatedUser,
    authenticate_token,
    create_access_token,
    decode_token,
    get_current_user,
)
from src.modules.auth.dependencies import require_roles

__all__ = [
    "AuthenticatedUser",
    "authenticate_token",
    "create_access_token",
    "decode_token",
    "get_current_user",
    "require_roles",
]
