from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _as_bool(value, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None or value == "":
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


class SalarySyncSettings(BaseSettings):
    """Centralized application configuration pulled from environment/.env."""

    secret_key: str = Field("dev-secret", alias="SECRET_KEY")
    # Empty ADMIN_PASSWORD lets the app boot; platform admin login then always fails.
    admin_password: str = Field("", alias="ADMIN_PASSWORD")

    # Shared fallback URL plus one optional URL per database purpose
    database_url: Optional[str] = Field(None, alias="DATABASE_URL")
    auth_database_url: Optional[str] = Field(None, alias="AUTH_DATABASE_URL")
    hr_database_url: Optional[str] = Field(None, alias="HR_DATABASE_URL")
    payroll_database_url: Optional[str] = Field(None, alias="PAYROLL_DATABASE_URL")
    auto_apply_ddl: bool = Field(True, alias="SALARYSYNC_AUTO_APPLY_DDL")
    enforce_alembic_migrations: bool = Field(False, alias="SALARYSYNC_ENFORCE_ALEMBIC")

    session_ttl_seconds: int = Field(7 * 24 * 60 * 60, alias="SESSION_TTL_SECONDS")
    admin_token_ttl_seconds: int = Field(2 * 60 * 60, alias="ADMIN_TOKEN_TTL_SECONDS")
    cookie_secure: bool = Field(False, alias="COOKIE_SECURE")
    require_email_verification: bool = Field(False, alias="REQUIRE_EMAIL_VERIFICATION")
    app_base_url: str = Field("http://localhost:8000", alias="APP_BASE_URL")

    rate_limit_backend: str = Field("auto", alias="RATE_LIMIT_BACKEND")
    rate_limit_redis_url: Optional[str] = Field(None, alias="RATE_LIMIT_REDIS_URL")
    # 'open' (allow when Redis down), 'closed' (block), 'memory' (fallback to in-proc)
    rate_limit_redis_policy: str = Field("open", alias="RATE_LIMIT_REDIS_POLICY")
    login_rate_limit_max: int = Field(10, alias="LOGIN_RL_MAX")
    login_rate_limit_window: int = Field(600, alias="LOGIN_RL_WINDOW")

    trial_duration_days: int = Field(14, alias="TRIAL_DURATION_DAYS")
    trial_extension_days: int = Field(7, alias="TRIAL_EXTENSION_DAYS")
    trial_max_extensions: int = Field(2, alias="TRIAL_MAX_EXTENSIONS")
    cron_secret: str = Field("", alias="CRON_SECRET")

    cache_ttl_seconds: int = Field(300, alias="CACHE_TTL_SECONDS")
    cache_sweep_interval: int = Field(600, alias="CACHE_SWEEP_INTERVAL")

    payment_api_key: str = Field("", alias="PAYMENT_API_KEY")
    payment_webhook_secret: str = Field("", alias="PAYMENT_WEBHOOK_SECRET")
    payment_api_base: str = Field("https://api.stripe.com/v1", alias="PAYMENT_API_BASE")
    payment_webhook_tolerance: int = Field(300, alias="PAYMENT_WEBHOOK_TOLERANCE")

    # Build/meta info
    app_version: str = Field("dev", alias="APP_VERSION")
    git_sha: Optional[str] = Field(None, alias="GIT_SHA")
    build_ts: Optional[str] = Field(None, alias="BUILD_TS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("secret_key", mode="before")
    @classmethod
    def _normalize_secret(cls, value: str | None) -> str:
        val = (value or "dev-secret").strip()
        return val or "dev-secret"

    @field_validator("admin_password", "cron_secret", "payment_api_key", "payment_webhook_secret", mode="before")
    @classmethod
    def _strip_secret(cls, value: str | None) -> str:
        return (value or "").strip()

    @field_validator(
        "database_url", "auth_database_url", "hr_database_url", "payroll_database_url", mode="before"
    )
    @classmethod
    def _strip_database_url(cls, value: str | None) -> Optional[str]:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("auto_apply_ddl", mode="before")
    @classmethod
    def _parse_auto_ddl(cls, value) -> bool:
        return _as_bool(value, True)

    @field_validator("enforce_alembic_migrations", "cookie_secure", "require_email_verification", mode="before")
    @classmethod
    def _parse_flag(cls, value) -> bool:
        return _as_bool(value, False)

    @field_validator("rate_limit_backend", mode="before")
    @classmethod
    def _normalize_backend(cls, value: str | None) -> str:
        val = (value or "auto").strip().lower()
        if val not in {"auto", "memory", "redis"}:
            return "memory"
        return val

    @field_validator("rate_limit_redis_policy", mode="before")
    @classmethod
    def _normalize_redis_policy(cls, value: str | None) -> str:
        val = (value or "open").strip().lower()
        if val not in {"open", "closed", "memory"}:
            return "open"
        return val

    @field_validator("payment_api_base", "app_base_url", mode="before")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str:
        return (value or "").strip().rstrip("/")

    def database_url_for(self, purpose: str) -> Optional[str]:
        specific = getattr(self, f"{purpose}_database_url", None)
        return specific or self.database_url


@lru_cache(maxsize=1)
def get_settings() -> SalarySyncSettings:
    return SalarySyncSettings()


def reset_settings_cache() -> None:
    """Testing helper to clear cached settings."""
    get_settings.cache_clear()
