from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

# HMAC-SHA256 keys shorter than this are rejected at startup
MIN_JWT_SECRET_LENGTH = 32


class ChallengeStoreMode(str, Enum):
    """Where one-time challenges live."""

    REDIS = "redis"
    MEMORY = "memory"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings, read from the environment and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/reflective_pomodoro", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        2.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Connect and command timeout for the challenge store, in seconds",
    )
    shared_fs_root: str = env_field("/srv/reflective-auth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    challenge_store: ChallengeStoreMode = env_field(
        ChallengeStoreMode.REDIS,
        "CHALLENGE_STORE",
        description="redis (shared across instances) or memory (single process)",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Session tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("reflective-pomodoro", "JWT_ISSUER")
    jwt_audience: str = env_field("reflective-pomodoro-users", "JWT_AUDIENCE")
    token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "TOKEN_TTL_MINUTES",
        description="Lifetime of an issued session token",
    )
    token_clock_skew_seconds: int = env_field(30, "TOKEN_CLOCK_SKEW_SECONDS")

    # Two-factor challenges
    challenge_ttl_seconds: int = env_field(600, "CHALLENGE_TTL_SECONDS")
    challenge_max_attempts: int = env_field(3, "CHALLENGE_MAX_ATTEMPTS")

    # Rate limits per email address
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    verify_rate_limit_per_minute: int = env_field(10, "VERIFY_RATE_LIMIT_PER_MINUTE")
    resend_rate_limit_per_minute: int = env_field(3, "RESEND_RATE_LIMIT_PER_MINUTE")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    smtp_timeout: float = env_field(5.0, "SMTP_TIMEOUT")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Reflective Pomodoro", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("https://reflectivepomodoro.com", "APP_BASE_URL")
    email_dev_mode: bool = env_field(
        False,
        "EMAIL_DEV_MODE",
        description="Log outgoing emails instead of failing when SMTP is not configured",
    )

    cors_allow_origins: list[str] = env_field(
        ["https://www.reflectivepomodoro.com"], "CORS_ALLOW_ORIGINS"
    )

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

    @field_validator("challenge_store")
    @classmethod
    def _validate_challenge_store(cls, value: ChallengeStoreMode) -> ChallengeStoreMode:
        return ChallengeStoreMode(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("challenge_ttl_seconds", "challenge_max_attempts", "token_ttl_minutes")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        # No generated fallback: tokens must verify across every instance
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value


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
