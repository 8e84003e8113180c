"""
Error taxonomy shared by the ledger, the identity layer and the HTTP surface.

Every failure the service reports is an AppError carrying an ErrorKind, so
callers branch on the category instead of matching message text.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_REFERENCE = "invalid_reference"
    ORDER_NOT_MODIFIABLE = "order_not_modifiable"
    FORBIDDEN = "forbidden"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    STORAGE = "storage"
    CONFIGURATION = "configuration"


class AppError(Exception):
    """Base class for errors that map onto an HTTP status."""

    kind: ErrorKind = ErrorKind.STORAGE
    status_code: int = 500
    title: str = "Internal server error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        title: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        if title is not None:
            self.title = title

    def to_body(self, expose_internals: bool = True) -> Dict[str, Any]:
        """Build the `{error, message, ...}` response body."""
        body: Dict[str, Any] = {"error": self.title, "message": self.message}
        if self.code:
            body["code"] = self.code
        body.update(self.details)
        return body


class ValidationError(AppError):
    kind = ErrorKind.VALIDATION
    status_code = 400
    title = "Validation failed"


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    title = "Not found"


class ConflictError(AppError):
    kind = ErrorKind.CONFLICT
    status_code = 409
    title = "Duplicate entry"


class InvalidReferenceError(AppError):
    kind = ErrorKind.INVALID_REFERENCE
    status_code = 400
    title = "Invalid reference"


class OrderNotModifiableError(AppError):
    kind = ErrorKind.ORDER_NOT_MODIFIABLE
    status_code = 400
    title = "Order cannot be modified"


class ForbiddenError(AppError):
    kind = ErrorKind.FORBIDDEN
    status_code = 403
    title = "Forbidden"


class UnauthorizedError(AppError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = 401
    title = "Unauthorized"


class RateLimitedError(AppError):
    kind = ErrorKind.RATE_LIMITED
    status_code = 429
    title = "Rate limit exceeded"


class _InternalError(AppError):
    """Errors whose detail is only shown outside production."""

    generic_message = "An unexpected error occurred"

    def __init__(self, message: str, *, public_message: Optional[str] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.public_message = public_message or self.generic_message

    def to_body(self, expose_internals: bool = True) -> Dict[str, Any]:
        if expose_internals:
            return super().to_body()
        return {"error": self.title, "message": self.public_message}


class StorageError(_InternalError):
    kind = ErrorKind.STORAGE
    status_code = 500
    title = "Database error"
    generic_message = "A storage error occurred. Please try again later."


class ConfigurationError(_InternalError):
    kind = ErrorKind.CONFIGURATION
    status_code = 500
    title = "Internal Server Error"
    generic_message = "Service is not configured"
