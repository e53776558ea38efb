from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_PASSWORD_LENGTH = 128
MAX_TOKEN_LENGTH = 4096


def _normalize_unicode(value: str) -> str:
    """Normalize a string with NFKC after stripping spoofing characters.

    Removes zero-width characters and RTL/LTR override characters before
    normalizing combining diacritics and compatibility characters.
    """
    # U+200B ZERO WIDTH SPACE, U+200C ZERO WIDTH NON-JOINER,
    # U+200D ZERO WIDTH JOINER, U+FEFF ZERO WIDTH NO-BREAK SPACE
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    # U+202A-U+202E, U+2066-U+2069
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    # input
    "weak_password",
    "duplicate_email",
    # authentication
    "invalid_credentials",
    "missing_token",
    "invalid_token",
    "token_type_mismatch",
    "token_expired",
    "token_revoked",
    "stale_token",
    "session_timed_out",
    # authorization
    "account_blocked",
    "account_locked",
    "identity_not_found",
    "duplicate_revocation",
    "session_not_active",
    # infrastructure
    "store_unavailable",
    "store_timeout",
    "configuration_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
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
    """API envelope format shared by success and error responses."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9 ()-]{7,20}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("name must not be blank")
    return cleaned


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    if not _PHONE_PATTERN.match(value.strip()):
        raise ValueError("invalid phone number")
    return value.strip()


class SignupRequest(BaseModel):
    firstname: str = Field(..., max_length=64)
    lastname: str = Field(..., max_length=64)
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    password_confirm: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("firstname", "lastname")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("phone")
    @classmethod
    def _validate_signup_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    """Body for the refresh endpoint; the refresh cookie takes precedence."""

    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class ProfileUpdateRequest(BaseModel):
    firstname: Optional[str] = Field(default=None, max_length=64)
    lastname: Optional[str] = Field(default=None, max_length=64)
    name: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = Field(default=None, max_length=32)
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("firstname", "lastname", "name")
    @classmethod
    def _validate_names(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)

    @field_validator("phone")
    @classmethod
    def _validate_profile_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @model_validator(mode="after")
    def _require_change(self):
        if not any(
            getattr(self, name) is not None
            for name in ("firstname", "lastname", "name", "phone", "email")
        ):
            raise ValueError("at least one profile field must be provided")
        return self


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)


class AccountStatusRequest(BaseModel):
    # Checked by the service so the error lists the allowed values
    status: str = Field(..., max_length=32)


class UserResponse(BaseModel):
    id: str
    email: str
    firstname: str
    lastname: str
    phone: Optional[str] = None
    role: str
    token_version: int
    is_blocked: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    session_id: str
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: Literal["Bearer"] = "Bearer"


class DeviceResponse(BaseModel):
    browser: str
    os: str
    device: str


class LocationResponse(BaseModel):
    country: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None


class SessionResponse(BaseModel):
    id: str
    device: DeviceResponse
    ip_address: Optional[str] = None
    location: Optional[LocationResponse] = None
    last_activity: datetime
    created_at: datetime
    is_current: bool = False


class DeviceSummaryResponse(BaseModel):
    device: DeviceResponse
    last_activity: datetime
    ip_address: Optional[str] = None
    location: Optional[LocationResponse] = None


class SessionStatsResponse(BaseModel):
    total_active_sessions: int
    devices: List[DeviceSummaryResponse] = Field(default_factory=list)
    oldest_session: Optional[datetime] = None
    newest_session: Optional[datetime] = None


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    stats: SessionStatsResponse


class WhoAmIResponse(BaseModel):
    authenticated: bool
    user: Optional[UserResponse] = None


class LogoutAllResponse(BaseModel):
    sessions_invalidated: int


class AdminActionResponse(BaseModel):
    user_id: str
    status: Optional[str] = None
    sessions_invalidated: Optional[int] = None
    deleted: bool = False
