from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session stores."""

    database_url: str = env_field(
        "postgresql://localhost:5432/userservice", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
    )
    lockout_threshold: int = env_field(
        3,
        "MAX_FAILED_LOGINS",
        description="Consecutive failures above which password login is refused",
    )
    session_ttl_minutes: int = env_field(
        15,
        "AUTHN_TIMEOUT",
        description="Sliding TTL for session tokens and one-time pads",
    )
    max_concurrent_sessions: int = env_field(
        5,
        "MAX_LOGINS",
        description="Per-user cap on live sessions (pads included)",
    )
    cookie_name: str = env_field("us-authn", "AUTHN_COOKIE")
    pad_cookie_name: str = env_field("authn-pad", "AUTHN_PAD_COOKIE")
    success_url: str = env_field("/", "REDIR_SUCCESS")
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Deadline applied to every credential/session store call",
    )
    # argon2id parameters; memory cost is in KiB
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST")
    password_memory_cost: int = env_field(65536, "PASSWORD_MEMORY_COST")
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM")

    model_config = ConfigDict(extra="ignore")

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

    @field_validator("lockout_threshold")
    @classmethod
    def _validate_threshold(cls, value: int) -> int:
        if value < 0:
            raise ValueError("lockout threshold must not be negative")
        return value

    @field_validator(
        "session_ttl_minutes",
        "max_concurrent_sessions",
        "password_time_cost",
        "password_memory_cost",
        "password_parallelism",
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

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_minutes * 60


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
