from __future__ import annotations

from enum import Enum


class ApiError(Exception):
    """Base class for failures that map onto a response envelope."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailed(ApiError):
    status_code = 400
    default_message = "Validation failed"

    def __init__(self, errors: list[dict[str, str]], message: str | None = None) -> None:
        super().__init__(message)
        self.errors = errors


class AuthFailure(str, Enum):
    MISSING = "missing"
    INVALID = "invalid"
    EXPIRED = "expired"
    USER_NOT_FOUND = "user_not_found"


class AuthError(ApiError):
    """Raised for any authentication failure.

    The reason is kept for logging only; callers always get the generic message.
    """

    status_code = 401
    default_message = "Not authorized"

    def __init__(self, reason: AuthFailure, message: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class NotFoundError(ApiError):
    status_code = 404
    default_message = "Resource not found"


class ConflictError(ApiError):
    status_code = 409
    default_message = "Resource already exists"

    def __init__(
        self,
        message: str | None = None,
        *,
        count: int | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.count = count
        if status_code is not None:
            self.status_code = status_code
