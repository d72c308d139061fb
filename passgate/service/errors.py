from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - bad_request (400)
    - validation_error (400)
    - unauthorized (401)
    - conflict (409)
    - unavailable (503)
    """

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Invalid or expired one-time token, already-verified email, unknown target user (400)."""
    status_code = 400
    error_code = "bad_request"


class ValidationError(BadRequestError):
    """Malformed input, rejected before any store is consulted (400)."""
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AccountLockedError(AuthenticationError):
    """Login rejected because the account is inside its lockout window (401)."""

    def __init__(self, retry_after_minutes: int) -> None:
        unit = "minute" if retry_after_minutes == 1 else "minutes"
        super().__init__(
            f"Account is locked. Please try again in {retry_after_minutes} {unit}",
            detail={"retry_after_minutes": retry_after_minutes},
        )
        self.retry_after_minutes = retry_after_minutes


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class TransientError(ServiceError):
    """A backing store or the mail relay is unavailable; safe to retry (503)."""
    status_code = 503
    error_code = "unavailable"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "ValidationError",
    "AuthenticationError",
    "AccountLockedError",
    "ConflictError",
    "TransientError",
]
