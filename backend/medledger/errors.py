"""Error taxonomy shared by the core and the HTTP layer."""
from __future__ import annotations

from typing import Any, Optional


class AppError(Exception):
    """Base class for failures that map onto a stable error code."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class AuthRequiredError(AppError):
    code = "AUTH_REQUIRED"
    status_code = 401


class AuthInvalidError(AppError):
    code = "AUTH_INVALID"
    status_code = 401


class ForbiddenError(AppError):
    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(AppError):
    code = "CONFLICT"
    status_code = 409


class ValidationFailedError(AppError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InternalError(AppError):
    code = "INTERNAL_ERROR"
    status_code = 500


class ConfigurationError(InternalError):
    """Raised when process settings cannot be loaded."""


class StoreConfigurationError(InternalError):
    """The backing store is unreachable because of how it is configured."""


class IdentifierExhaustedError(InternalError):
    """No unique patient identifier could be generated."""
