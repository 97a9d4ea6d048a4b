"""Domain exception hierarchy shared by the HTTP and socket surfaces."""

from __future__ import annotations


class AppException(Exception):
    """Base exception for all domain errors.

    Subclasses set ``code`` and ``status_code`` at the class level; callers
    provide ``message`` and an optional ``details`` list. The status code is
    HTTP-style even when the error travels over a socket, so both surfaces
    map errors the same way.
    """

    code: str = "APP_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: list[dict] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_payload(self, event: str | None = None) -> dict:
        """Build the ``{success: false, error: {...}}`` envelope sent to a socket."""
        error: dict = {
            "message": self.message,
            "code": self.status_code,
            "type": self.code,
        }
        if event is not None:
            error["event"] = event
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}


class NotFoundException(AppException):
    code = "NOT_FOUND"
    status_code = 404


class ConflictException(AppException):
    code = "CONFLICT"
    status_code = 409


class ForbiddenException(AppException):
    code = "FORBIDDEN"
    status_code = 403


class UnauthorizedException(AppException):
    code = "UNAUTHORIZED"
    status_code = 401


class ValidationException(AppException):
    code = "VALIDATION_ERROR"
    status_code = 422


class UnknownEventException(AppException):
    code = "UNKNOWN_EVENT"
    status_code = 400


class RateLimitException(AppException):
    code = "RATE_LIMITED"
    status_code = 429
