from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the error envelope:
    - unauthorized (401)
    - step_up_required (401 for a pending session, 403 for a sensitive action)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error / conflict / expired (400)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session is missing or past its expiry (401)."""
    pass


class PendingStepUpError(AuthenticationError):
    """Session exists but still awaits its second factor (401)."""
    error_code = "step_up_required"

    def __init__(self, message: str = "two-factor verification required", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.detail.setdefault("requiresStepUp", True)


class StepUpRequiredError(ServiceError):
    """Sensitive action needs a fresh second-factor code (403)."""
    status_code = 403
    error_code = "step_up_required"

    def __init__(
        self, message: str = "two-factor authentication code required", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        self.detail.setdefault("requiresStepUp", True)


class ForbiddenError(ServiceError):
    """Access denied - resource not owned by the caller (403)."""
    status_code = 403
    error_code = "forbidden"


class CsrfError(ForbiddenError):
    """Double-submit CSRF token missing or mismatched (403)."""
    pass


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """State conflict: value already in use, record already terminal (400)."""
    status_code = 400
    error_code = "conflict"


class ExpiredError(ServiceError):
    """Token used after its deadline (400)."""
    status_code = 400
    error_code = "expired"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many attempts",
        *,
        retry_after_seconds: int = 0,
        remaining: int = 0,
        limit: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_seconds = max(0, int(retry_after_seconds))
        self.remaining = max(0, int(remaining))
        self.limit = limit
        self.detail.setdefault("retryAfter", self.retry_after_seconds)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "SessionExpiredError",
    "PendingStepUpError",
    "StepUpRequiredError",
    "ForbiddenError",
    "CsrfError",
    "NotFoundError",
    "ConflictError",
    "ExpiredError",
    "RateLimitedError",
    "ServerError",
]
