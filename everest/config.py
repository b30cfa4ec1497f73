from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from everest.logging import get_logger

logger = get_logger(__name__)


_ENVIRONMENTS = {"development", "production", "test"}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the account and chat backend."""

    environment: str = env_field("development", "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/everest", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory fallbacks for the test suite.",
    )

    # Token signing. Both secrets are required to issue tokens; there is no
    # generated fallback so a misconfigured deployment fails loudly.
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("everest", "JWT_ISSUER")
    jwt_audience: str = env_field("everest-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    session_timeout_minutes: int = env_field(
        60,
        "SESSION_TIMEOUT_MINUTES",
        description="Absolute ceiling on access-token age, independent of its expiry",
    )
    token_refresh_window_seconds: int = env_field(
        300,
        "TOKEN_REFRESH_WINDOW_SECONDS",
        description="Remaining lifetime below which access tokens are rotated in-band",
    )
    token_min_length: int = env_field(100, "TOKEN_MIN_LENGTH")
    password_reset_ttl_minutes: int = env_field(10, "PASSWORD_RESET_TTL_MINUTES")

    # Cookies / HTTP
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    device_cookie_max_age_days: int = env_field(30, "DEVICE_COOKIE_MAX_AGE_DAYS")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    # Chat retention
    chat_message_retention_days: int = env_field(7, "CHAT_MESSAGE_RETENTION_DAYS")
    device_retention_days: int = env_field(30, "DEVICE_RETENTION_DAYS")
    chat_cleanup_interval_seconds: int = env_field(3600, "CHAT_CLEANUP_INTERVAL_SECONDS")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Everest", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: str) -> str:
        normalized = (value or "development").strip().lower()
        if normalized not in _ENVIRONMENTS:
            raise ValueError(
                f"environment must be one of: {', '.join(sorted(_ENVIRONMENTS))}"
            )
        return normalized

    @field_validator("jwt_secret", "jwt_refresh_secret", "cookie_domain", "smtp_host")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_timeout_minutes",
        "password_reset_ttl_minutes",
        "device_cookie_max_age_days",
        "chat_message_retention_days",
        "device_retention_days",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("token_refresh_window_seconds", "token_min_length")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
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
