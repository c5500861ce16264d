from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class defines an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - invalid_token (400)
    - unauthorized / invalid_credentials (401)
    - forbidden (403)
    - not_found (404)
    - conflict / duplicate_email (409)
    - rate_limited (429)
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
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidOrExpiredTokenError(ServiceError):
    """Single-use token is unknown, already used or past expiry (400)."""
    status_code = 400
    error_code = "invalid_token"


class NoActiveSessionError(ValidationError):
    pass


class EmailAlreadyVerifiedError(ValidationError):
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidRefreshTokenError(AuthenticationError):
    pass


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are indistinguishable (401)."""
    error_code = "invalid_credentials"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class EmailVerificationRequiredError(ForbiddenError):
    pass


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    pass


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    error_code = "duplicate_email"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class TooManyAttemptsError(RateLimitedError):
    """Too many failed logins for an email inside the window."""

    def __init__(self, retry_after_minutes: int) -> None:
        super().__init__(
            f"Too many failed login attempts. Please try again in {retry_after_minutes} minutes.",
            detail={"retryAfter": retry_after_minutes},
            headers={"Retry-After": str(retry_after_minutes * 60)},
        )
        self.retry_after_minutes = retry_after_minutes


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidOrExpiredTokenError",
    "NoActiveSessionError",
    "EmailAlreadyVerifiedError",
    "AuthenticationError",
    "InvalidRefreshTokenError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "EmailVerificationRequiredError",
    "NotFoundError",
    "UserNotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "RateLimitedError",
    "TooManyAttemptsError",
    "ServerError",
]
