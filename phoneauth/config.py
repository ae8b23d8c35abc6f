from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from phoneauth.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class SMSProvider(str, Enum):
    """Outbound SMS transports."""

    CONSOLE = "console"
    HTTP = "http"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    env: Environment = env_field(Environment.PRODUCTION, "ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/phoneauth", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE", ge=1)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows generated secrets and runtime resets for the test suite.",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_expiry_minutes: int = env_field(30, "JWT_EXPIRY_MINUTES", ge=1)
    refresh_token_expiry_days: int = env_field(30, "REFRESH_TOKEN_EXPIRY_DAYS", ge=1)
    session_expiry_days: int = env_field(30, "SESSION_EXPIRY_DAYS", ge=1)

    otp_expiry_minutes: int = env_field(5, "OTP_EXPIRY_MINUTES", ge=1)
    otp_cooldown_minutes: int = env_field(1, "OTP_COOLDOWN_MINUTES", ge=0)
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS", ge=1)

    sms_provider: SMSProvider = env_field(SMSProvider.CONSOLE, "SMS_PROVIDER")
    sms_api_url: str | None = env_field(None, "SMS_API_URL")
    sms_api_key: str | None = env_field(None, "SMS_API_KEY")
    sms_sender_id: str | None = env_field(None, "SMS_SENDER_ID")
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS", gt=0)

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
    def is_dev(self) -> bool:
        return self.env == Environment.DEVELOPMENT

    @field_validator("env", mode="before")
    @classmethod
    def _normalize_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < 32:
                logger.warning("jwt_secret_short", length=len(self.jwt_secret))
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set outside TEST_MODE")
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET missing; using an ephemeral secret for TEST_MODE",
        )
        self.jwt_secret = secrets.token_urlsafe(64)
        return self

    @model_validator(mode="after")
    def _check_sms_provider(self) -> "Settings":
        if self.sms_provider == SMSProvider.HTTP and not self.sms_api_url:
            raise ValueError("SMS_API_URL is required when SMS_PROVIDER=http")
        return self


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
