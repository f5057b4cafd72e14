from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlsplit
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from userservice.storage.models import Profile

# Stable error codes carried in ErrorBody.code
_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "passwords_unchanged",
    "server_error",
}

# Bounds the work a single request can push through argon2
MAX_PASSWORD_LENGTH = 1024


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class SignupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class LoginRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PasswordChangeRequest(BaseModel):
    """Either ``current_password`` or a redeemed pad cookie authorizes the change."""

    name: str = Field(..., min_length=1, max_length=255)
    current_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class PasswordResetRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    redirect: str = Field(default="/", min_length=1, max_length=2048)

    @field_validator("redirect")
    @classmethod
    def _validate_redirect(cls, value: str) -> str:
        # Local paths only. Browsers read "\" as "/" and drop tabs and
        # newlines, so "/\host" and "/\t/host" leave the origin.
        if "\\" in value or any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in value):
            raise ValueError("redirect must be a local path")
        parts = urlsplit(value)
        if parts.scheme or parts.netloc or not value.startswith("/") or value.startswith("//"):
            raise ValueError("redirect must be a local path")
        return value


class ProfileResponse(BaseModel):
    user_id: str
    name: str
    last_login: Optional[datetime] = None
    mtime: datetime
    ctime: datetime

    @classmethod
    def from_profile(cls, profile: Profile) -> "ProfileResponse":
        return cls(
            user_id=profile.user_id,
            name=profile.name,
            last_login=profile.last_login,
            mtime=profile.mtime,
            ctime=profile.ctime,
        )


class SessionResponse(BaseModel):
    token: str
    expires_at: datetime
    ttl_seconds: int


class LoginResponse(BaseModel):
    profile: ProfileResponse
    session: SessionResponse
