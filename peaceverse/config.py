from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from peaceverse.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment."""

    app_env: AppEnv = env_field(
        AppEnv.DEVELOPMENT,
        "APP_ENV",
        description="production turns on Secure/SameSite=Strict cookies and requires explicit secrets",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/peaceverse", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/peaceverse", "SHARED_FS_ROOT")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; enables runtime resets",
    )

    # Token signing. The two classes never share key material.
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    access_token_keys: str | None = env_field(
        None,
        "ACCESS_TOKEN_KEYS",
        description="Key pool as JSON object or 'kid:secret,kid:secret'; first entry signs",
    )
    refresh_token_keys: str | None = env_field(None, "REFRESH_TOKEN_KEYS")
    jwt_issuer: str = env_field("peaceverse", "JWT_ISSUER")
    jwt_audience: str = env_field("peaceverse-web", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    token_leeway_seconds: int = env_field(30, "TOKEN_LEEWAY_SECONDS", ge=0)

    otp_ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES", ge=1)
    single_session: bool = env_field(
        True,
        "SINGLE_SESSION",
        description="Revoke a user's other refresh sessions on login",
    )
    auth_rate_limit_per_minute: int = env_field(
        5,
        "AUTH_RATE_LIMIT_PER_MINUTE",
        ge=0,
        description="Per-email limit for signup/login/resend/forgot-password; 0 disables",
    )

    # Housekeeping for accounts that never finished verification
    unverified_retention_minutes: int = env_field(
        30, "UNVERIFIED_RETENTION_MINUTES", ge=1
    )
    unverified_sweep_interval_seconds: int = env_field(
        300, "UNVERIFIED_SWEEP_INTERVAL_SECONDS", ge=1
    )
    unverified_sweep_enabled: bool = env_field(True, "UNVERIFIED_SWEEP_ENABLED")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Peace-Verse", "EMAIL_FROM_NAME")

    # SMS delivery (TextSMS-compatible HTTP API)
    sms_api_url: str | None = env_field(None, "SMS_API_URL")
    sms_api_key: str | None = env_field(None, "SMS_API_KEY")
    sms_partner_id: str | None = env_field(None, "SMS_PARTNER_ID")
    sms_shortcode: str = env_field("TextSMS", "SMS_SHORTCODE")
    sms_country: str = env_field("KE", "SMS_COUNTRY")
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS", gt=0)

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000", "http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("app_env", mode="before")
    @classmethod
    def _normalize_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() or AppEnv.DEVELOPMENT.value
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_token_secrets(self) -> "Settings":
        production = self.app_env == AppEnv.PRODUCTION
        for field_name, pool_name in (
            ("access_token_secret", "access_token_keys"),
            ("refresh_token_secret", "refresh_token_keys"),
        ):
            if getattr(self, field_name) or getattr(self, pool_name):
                continue
            if production:
                raise ValueError(
                    f"{field_name.upper()} must be set when APP_ENV=production"
                )
            # Ephemeral secret: tokens will not survive a restart or span workers
            setattr(self, field_name, secrets.token_urlsafe(48))
            logger.warning("token_secret_generated", setting=field_name.upper())
        if (
            self.access_token_secret
            and self.access_token_secret == self.refresh_token_secret
        ):
            raise ValueError("access and refresh token secrets must differ")
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @property
    def cookie_samesite(self) -> str:
        return "strict" if self.is_production else "lax"

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_minutes * 60


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
