from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)

    ``message`` is always safe to show to a client. Anything internal goes
    into logs, never into ``message`` or ``detail``.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request input has the wrong shape or fails a rule (400)."""
    status_code = 400
    error_code = "validation_error"
    default_message = "invalid request"


class WeakPasswordError(ValidationError):
    """Password does not meet the minimum policy."""
    default_message = "password does not meet the minimum requirements"


class InvalidCredentials(ServiceError):
    """Login failed. Deliberately generic so callers cannot enumerate accounts."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "Incorrect email or password"


class Unauthorized(ServiceError):
    """Missing, invalid, expired or stale session token (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "Unauthorized"


class TokenInvalidError(Unauthorized):
    """Token signature or format is invalid."""
    default_message = "invalid token"


class TokenExpiredError(Unauthorized):
    """Token is past its expiry."""
    default_message = "token has expired"


class Forbidden(ServiceError):
    """Authenticated identity lacks the required role (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "You don't have permission to perform this action"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate email on signup (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "resource already exists"


class DeliveryError(ServiceError):
    """Outbound email could not be delivered (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "There was an error sending the email. Please try again later."


class CorruptHashError(ServiceError):
    """A stored password digest is malformed (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "InvalidCredentials",
    "Unauthorized",
    "TokenInvalidError",
    "TokenExpiredError",
    "Forbidden",
    "NotFoundError",
    "ConflictError",
    "DeliveryError",
    "CorruptHashError",
]
