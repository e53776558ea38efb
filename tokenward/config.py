from __future__ import annotations

import os
import re
import secrets
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from tokenward.logging import get_logger

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^(\d+)([smhd])$")
_DURATION_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}

MIN_JWT_SECRET_LENGTH = 32


def parse_duration(value: str) -> timedelta:
    """Parse a compact duration such as ``"15m"``, ``"2h"`` or ``"7d"``."""

    match = _DURATION_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValueError(
            f"invalid duration {value!r}; expected <number><s|m|h|d>, e.g. 2h or 7d"
        )
    amount, unit = match.groups()
    return int(amount) * _DURATION_UNITS[unit]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Immutable runtime settings, loaded once at startup and passed to services."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenward", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Directory for the memory store's credential snapshot; unset keeps it in-process only",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviors: ephemeral JWT secret, sync Redis client, runtime reset",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tokenward", "JWT_ISSUER")
    jwt_audience: str = env_field("tokenward-clients", "JWT_AUDIENCE")
    access_token_expires_in: str = env_field(
        "2h", "ACCESS_TOKEN_EXPIRES_IN", description="Access token lifetime, e.g. 15m or 2h"
    )
    refresh_token_expires_in: str = env_field(
        "7d", "REFRESH_TOKEN_EXPIRES_IN", description="Refresh token lifetime, e.g. 7d"
    )
    token_clock_skew_seconds: int = env_field(
        0,
        "TOKEN_CLOCK_SKEW_SECONDS",
        description="Grace period applied to token expiry checks for skewed node clocks",
    )
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")
    lock_duration_minutes: int = env_field(120, "LOCK_DURATION_MINUTES")
    session_timeout_minutes: int = env_field(
        120,
        "SESSION_TIMEOUT_MINUTES",
        description="Inactivity window after which an authenticated session is ended",
    )
    session_cleanup_hours: int = env_field(
        24,
        "SESSION_CLEANUP_HOURS",
        description="Active sessions idle for longer than this are physically removed",
    )
    maintenance_interval_seconds: int = env_field(300, "MAINTENANCE_INTERVAL_SECONDS")
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Deadline for each credential, session or revocation store call",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    refresh_cookie_path: str = env_field("/v1/auth/refresh-token", "REFRESH_COOKIE_PATH")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE")
    cors_allow_origins: str = env_field(
        "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000",
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated list of allowed CORS origins",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("access_token_expires_in", "refresh_token_expires_in")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        parse_duration(value)
        return value.strip()

    @field_validator(
        "max_failed_login_attempts",
        "lock_duration_minutes",
        "session_timeout_minutes",
        "session_cleanup_hours",
        "maintenance_interval_seconds",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store timeout must be positive")
        return value

    @field_validator("token_clock_skew_seconds")
    @classmethod
    def _validate_skew(cls, value: int) -> int:
        if value < 0:
            raise ValueError("clock skew cannot be negative")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        if info.data.get("test_mode"):
            logger.warning(
                "jwt_secret_generated",
                message="JWT_SECRET unset; using an ephemeral secret for TEST_MODE",
            )
            return secrets.token_urlsafe(64)
        raise ValueError("JWT_SECRET must be set outside TEST_MODE")

    @property
    def access_token_ttl(self) -> timedelta:
        return parse_duration(self.access_token_expires_in)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return parse_duration(self.refresh_token_expires_in)

    @property
    def allowed_origins(self) -> list[str]:
        return [
            origin.strip()
            for origin in self.cors_allow_origins.split(",")
            if origin.strip()
        ]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
