from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401): credential missing, invalid, expired, revoked or reused
    - forbidden (403): authenticated but not allowed (banned, suspended, CSRF)
    - not_found (404)
    - conflict (409)
    - rate_limited / account_locked (429)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ResetFailureReason(str, Enum):
    """Internal reasons a reset token was rejected. Never shown to clients."""

    INVALID = "invalid"
    NOT_FOUND = "not_found"
    USER_MISMATCH = "user_mismatch"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"


class InvalidResetTokenError(ValidationError):
    """A password reset token was rejected.

    The message is the same for every failure so the response cannot be used
    to discover which tokens exist; ``reason`` keeps the precise cause for audit.
    """

    PUBLIC_MESSAGE = "invalid or expired reset token"

    def __init__(self, reason: ResetFailureReason) -> None:
        super().__init__(self.PUBLIC_MESSAGE)
        self.reason = ResetFailureReason(reason)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountBannedError(ForbiddenError):
    error_code = "account_banned"

    def __init__(self, message: str = "account banned", *, detail: Optional[dict] = None):
        super().__init__(message, detail=detail)


class AccountSuspendedError(ForbiddenError):
    """The account is under an active suspension; ``suspended_until`` may be None."""

    error_code = "account_suspended"

    def __init__(self, suspended_until: Optional[datetime], *, reason: Optional[str] = None):
        detail: dict = {
            "suspended_until": suspended_until.isoformat() if suspended_until else None
        }
        if reason:
            detail["reason"] = reason
        super().__init__("account suspended", detail=detail)
        self.suspended_until = suspended_until


class CsrfError(ForbiddenError):
    error_code = "csrf_invalid"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429). ``retry_after`` is in whole seconds."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many requests",
        *,
        retry_after: int = 1,
        detail: Optional[dict] = None,
    ) -> None:
        self.retry_after = max(1, int(retry_after))
        merged = {"retry_after": self.retry_after, **(detail or {})}
        super().__init__(message, detail=merged)


class AccountLockedError(RateLimitedError):
    """Identifier locked out after too many failed attempts (429)."""

    error_code = "account_locked"

    def __init__(self, locked_until: datetime, *, retry_after: int) -> None:
        super().__init__(
            "account temporarily locked",
            retry_after=retry_after,
            detail={"locked_until": locked_until.isoformat()},
        )
        self.locked_until = locked_until


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ResetFailureReason",
    "InvalidResetTokenError",
    "AuthenticationError",
    "ForbiddenError",
    "AccountBannedError",
    "AccountSuspendedError",
    "CsrfError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "AccountLockedError",
    "ServerError",
]
