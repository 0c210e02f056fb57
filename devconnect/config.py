from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from devconnect.logging import get_logger

logger = get_logger(__name__)

DEFAULT_AVATAR_URL = (
    "https://www.gravatar.com/avatar/00000000000000000000000000000000?d=mp&f=y"
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the API, stores, cache and realtime gateway."""

    database_url: str = env_field(
        "postgresql://localhost:5432/devconnect", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory fallbacks for the test suite.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("devconnect", "JWT_ISSUER")
    jwt_audience: str = env_field("devconnect-clients", "JWT_AUDIENCE")
    token_ttl_seconds: int = env_field(
        24 * 60 * 60,
        "TOKEN_TTL_SECONDS",
        description="Validity window of issued tokens; mirrored into the session registry TTL.",
    )
    auth_rate_limit: int = env_field(
        20,
        "AUTH_RATE_LIMIT",
        description="Signup/login requests allowed per client IP per window",
    )
    auth_rate_limit_window_seconds: int = env_field(
        15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS"
    )
    messages_page_size: int = env_field(20, "MESSAGES_PAGE_SIZE")
    posts_page_size: int = env_field(10, "POSTS_PAGE_SIZE")
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE")
    suggestions_limit: int = env_field(10, "SUGGESTIONS_LIMIT")
    profile_cache_ttl_seconds: int = env_field(60 * 60, "PROFILE_CACHE_TTL_SECONDS")
    default_avatar_url: str = env_field(DEFAULT_AVATAR_URL, "DEFAULT_AVATAR_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("token_ttl_seconds")
    @classmethod
    def _validate_token_ttl(cls, value: int) -> int:
        if value < 0:
            raise ValueError("TOKEN_TTL_SECONDS must not be negative")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; issued tokens are invalidated on restart",
        )
        return secrets.token_urlsafe(64)


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
