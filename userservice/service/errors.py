from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - rate_limited (429)
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


BAD_CREDENTIALS_MESSAGE = "invalid credentials"


class BadCredentialsError(ServiceError):
    """Unknown identifier or wrong password (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = BAD_CREDENTIALS_MESSAGE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class LockedOutError(BadCredentialsError):
    """Failure count above the lockout threshold.

    Carries the same message and error code as :class:`BadCredentialsError`
    so a caller cannot tell the two apart from the body; only the status differs.
    """
    status_code = 403


class PasswordsUnchangedError(ValidationError):
    """New password hashes to the stored one (400)."""
    error_code = "passwords_unchanged"

    def __init__(self, message: str = "new password must differ from current", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Token or pad absent, expired or not owned (403)."""
    status_code = 403
    error_code = "forbidden"

    def __init__(self, message: str = "not logged in", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TooManySessionsError(ServiceError):
    """Per-user concurrent session cap reached with nothing to reclaim (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "too many concurrent sessions", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"

    @classmethod
    def for_operation(cls, operation: str) -> "ServerError":
        return cls("internal error", detail={"operation": operation})


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadCredentialsError",
    "LockedOutError",
    "PasswordsUnchangedError",
    "ForbiddenError",
    "TooManySessionsError",
    "ServerError",
    "BAD_CREDENTIALS_MESSAGE",
]
