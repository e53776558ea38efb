from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``.
    Authentication failures share a small set of low-detail messages while the
    ``error_code`` keeps them distinguishable in logs and for API clients:

    - 400: validation_error, weak_password, duplicate_email
    - 401: invalid_credentials, missing_token, invalid_token, token_expired,
      token_type_mismatch, token_revoked, stale_token, session_timed_out
    - 403: forbidden, account_blocked, account_locked
    - 404: not_found, identity_not_found
    - 409: conflict, duplicate_revocation, session_not_active
    - 429: rate_limited
    - 500: server_error, store_unavailable, store_timeout, configuration_error
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


class WeakPasswordError(ValidationError):
    """Password failed the strength policy; message lists every violated rule."""

    error_code = "weak_password"

    def __init__(self, violations: list[str], *, strength: Optional[dict] = None) -> None:
        detail: dict = {"violations": list(violations)}
        if strength is not None:
            detail["strength"] = strength
        super().__init__(", ".join(violations), detail=detail)
        self.violations = list(violations)


class DuplicateEmailError(ValidationError):
    error_code = "duplicate_email"

    def __init__(self, message: str = "Email already in use", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Same error for unknown email and wrong password."""

    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MissingTokenError(AuthenticationError):
    error_code = "missing_token"

    def __init__(
        self, message: str = "You are not logged in. Please login to access this route", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid token. Please login again", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenTypeMismatchError(InvalidTokenError):
    error_code = "token_type_mismatch"

    def __init__(self, expected: str, actual: Optional[str]) -> None:
        super().__init__(
            "Invalid token type",
            detail={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"

    def __init__(
        self, message: str = "Your session has expired. Please login again", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class TokenRevokedError(AuthenticationError):
    error_code = "token_revoked"

    def __init__(
        self, message: str = "Your session has been invalidated. Please login again", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class StaleTokenError(AuthenticationError):
    """Token was issued before the identity's current token version."""

    error_code = "stale_token"

    def __init__(
        self, message: str = "Your password was changed. Please login again", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class SessionTimedOutError(AuthenticationError):
    error_code = "session_timed_out"

    def __init__(self, timeout_minutes: int) -> None:
        super().__init__(
            f"Your session expired due to {timeout_minutes} minutes of inactivity. Please login again",
            detail={"timeout_minutes": timeout_minutes},
        )


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountBlockedError(ForbiddenError):
    error_code = "account_blocked"

    def __init__(self, message: str = "Your account has been disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ForbiddenError):
    error_code = "account_locked"

    def __init__(self, remaining_minutes: int) -> None:
        super().__init__(
            "Account temporarily locked due to multiple failed login attempts. "
            f"Try again in {remaining_minutes} minutes",
            detail={"remaining_minutes": remaining_minutes},
        )
        self.remaining_minutes = remaining_minutes


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class IdentityNotFoundError(NotFoundError):
    error_code = "identity_not_found"

    def __init__(self, message: str = "User not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateRevocationError(ConflictError):
    """The token value already has a revocation entry."""

    error_code = "duplicate_revocation"

    def __init__(self, message: str = "Token already revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionNotActiveError(ConflictError):
    """Activity update attempted on a session that was already invalidated."""

    error_code = "session_not_active"

    def __init__(self, session_id: str) -> None:
        super().__init__("Session is no longer active", detail={"session_id": session_id})
        self.session_id = session_id


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        retry_after_seconds: int,
        message: str = "Too many requests. Please try again later",
    ) -> None:
        super().__init__(message, detail={"retry_after_seconds": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StoreUnavailableError(ServerError):
    """A backing store failed; never reported as an authentication failure."""

    error_code = "store_unavailable"

    def __init__(self, operation: str, message: str = "Authentication store unavailable") -> None:
        super().__init__(message, detail={"operation": operation, "retryable": True})
        self.operation = operation


class StoreTimeoutError(StoreUnavailableError):
    error_code = "store_timeout"

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        super().__init__(operation, "Authentication store timed out")
        self.detail["timeout_seconds"] = timeout_seconds
        self.timeout_seconds = timeout_seconds


class ConfigurationError(ServerError):
    error_code = "configuration_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "DuplicateEmailError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "MissingTokenError",
    "InvalidTokenError",
    "TokenTypeMismatchError",
    "TokenExpiredError",
    "TokenRevokedError",
    "StaleTokenError",
    "SessionTimedOutError",
    "ForbiddenError",
    "AccountBlockedError",
    "AccountLockedError",
    "NotFoundError",
    "IdentityNotFoundError",
    "ConflictError",
    "DuplicateRevocationError",
    "SessionNotActiveError",
    "RateLimitedError",
    "ServerError",
    "StoreUnavailableError",
    "StoreTimeoutError",
    "ConfigurationError",
]
