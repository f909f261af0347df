from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from coursegate.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 32


class UserRole(str, Enum):
    """Global roles carried on every principal."""

    PLATFORM_ADMIN = "platform_admin"
    INSTITUTION_ADMIN = "institution_admin"
    INSTRUCTOR = "instructor"
    STUDENT = "student"


class OrgRole(str, Enum):
    """Organization-scoped roles carried on memberships."""

    ADMIN = "admin"
    STUDENT = "student"


# Consumer mail providers are never treated as institutional domains.
COMMON_EMAIL_PROVIDERS = frozenset(
    {
        "gmail.com",
        "googlemail.com",
        "outlook.com",
        "hotmail.com",
        "yahoo.com",
        "ymail.com",
        "icloud.com",
        "protonmail.com",
        "proton.me",
        "pm.me",
        "aol.com",
        "live.com",
        "mail.com",
        "zoho.com",
        "hey.com",
        "fastmail.com",
        "tutanota.com",
        "gmx.com",
        "gmx.net",
    }
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings loaded from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/coursegate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-process fallbacks used by the test suite.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("coursegate", "JWT_ISSUER")
    jwt_audience: str = env_field("coursegate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of the signed access token; bounds how long a logout takes to apply",
    )
    refresh_token_ttl_days: int = env_field(
        7, "REFRESH_TOKEN_TTL_DAYS", description="Lifetime of a rotation token"
    )
    jwt_leeway_seconds: int = env_field(
        0, "JWT_LEEWAY_SECONDS", description="Clock skew tolerated when checking exp"
    )
    require_email_verification: bool = env_field(
        True,
        "REQUIRE_EMAIL_VERIFICATION",
        description="Reject password logins until the email address is verified",
    )
    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")
    roster_auto_link: bool = env_field(
        True,
        "ROSTER_AUTO_LINK",
        description=(
            "Verify memberships for existing accounts whose email matches an uploaded "
            "roster row, without an enrollment code"
        ),
    )
    payment_webhook_secret: str | None = env_field(None, "PAYMENT_WEBHOOK_SECRET")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    claim_rate_limit_per_minute: int = env_field(5, "CLAIM_RATE_LIMIT_PER_MINUTE")
    # SMTP delivery falls back to logging when host is unset
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Coursegate", "EMAIL_FROM_NAME")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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
    def secure_cookies(self) -> bool:
        return self.app_base_url.lower().startswith("https://")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < _MIN_JWT_SECRET_LENGTH:
            logger.warning("jwt_secret_short", length=len(value))
        return value

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_days")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
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
