"""FastAPI dependency functions for role-gated endpoints."""

from fastapi import Depends

from src.exceptions import ForbiddenException
from src.modules.auth.auth import AuthenticatedUser, get_current_user


def require_roles(*roles: str):
    """Factory that returns a FastAPI dependency allowing only the given roles."""

    async def _check(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
        if user.role not in roles:
            raise ForbiddenException(f"Role '{user.role}' is not allowed to perform this action")
        return user

    return _check
