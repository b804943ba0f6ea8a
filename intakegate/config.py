from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from intakegate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the intake session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/intakegate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/intakegate", "SHARED_FS_ROOT")
    build_sha: str = env_field("dev", "BUILD_SHA")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-process fallbacks.",
    )

    # Token service
    jwt_issuer: str = env_field("intakegate", "JWT_ISSUER")
    jwt_audience: str = env_field("intake-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of signed access tokens",
    )
    refresh_token_ttl_days: int = env_field(
        7,
        "REFRESH_TOKEN_TTL_DAYS",
        description="Lifetime of opaque refresh tokens",
    )
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS")
    revoke_lineage_on_reuse: bool = env_field(
        True,
        "REVOKE_LINEAGE_ON_REUSE",
        description="Revoke every live refresh token of a session when a revoked one is replayed",
    )
    signing_private_key: str | None = env_field(
        None,
        "SIGNING_PRIVATE_KEY",
        description="PEM encoded Ed25519 private key; generated under SHARED_FS_ROOT when unset",
    )
    field_encryption_key: str | None = env_field(
        None,
        "FIELD_ENCRYPTION_KEY",
        description="urlsafe base64 encoded 32-byte AES key; generated under SHARED_FS_ROOT when unset",
    )

    # Session lifecycle
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS")
    activity_window_minutes: int = env_field(
        60,
        "ACTIVITY_WINDOW_MINUTES",
        description="How far expires_at is pushed out on qualifying activity",
    )
    progress_cache_ttl_seconds: int = env_field(3600, "PROGRESS_CACHE_TTL_SECONDS")
    progress_lock_ttl_seconds: int = env_field(10, "PROGRESS_LOCK_TTL_SECONDS")

    # Rate limits
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_anonymous: int = env_field(100, "RATE_LIMIT_ANONYMOUS")
    rate_limit_authenticated: int = env_field(1000, "RATE_LIMIT_AUTHENTICATED")

    # Recovery
    recovery_token_ttl_minutes: int = env_field(15, "RECOVERY_TOKEN_TTL_MINUTES")
    recovery_requests_per_hour: int = env_field(3, "RECOVERY_REQUESTS_PER_HOUR")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

    # Retention and scheduling
    retention_days: int = env_field(
        90,
        "RETENTION_DAYS",
        description="Minimum age of a terminal session before it is purged",
    )
    audit_retention_days: int = env_field(2190, "AUDIT_RETENTION_DAYS")
    refresh_token_purge_days: int = env_field(90, "REFRESH_TOKEN_PURGE_DAYS")
    expiration_sweep_interval_seconds: int = env_field(
        15 * 60, "EXPIRATION_SWEEP_INTERVAL_SECONDS"
    )
    retention_purge_interval_seconds: int = env_field(
        24 * 60 * 60, "RETENTION_PURGE_INTERVAL_SECONDS"
    )
    sweep_batch_size: int = env_field(100, "SWEEP_BATCH_SIZE")
    scheduler_enabled: bool = env_field(
        True,
        "SCHEDULER_ENABLED",
        description="Run the expiration sweep and retention purge inside the API process",
    )

    # Timeouts for external calls
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    cache_timeout_seconds: float = env_field(5.0, "CACHE_TIMEOUT_SECONDS")

    # Email collaborator
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Intake", "EMAIL_FROM_NAME")

    # HTTP surface
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "session_ttl_hours",
        "activity_window_minutes",
        "progress_cache_ttl_seconds",
        "progress_lock_ttl_seconds",
        "rate_limit_window_seconds",
        "rate_limit_anonymous",
        "rate_limit_authenticated",
        "recovery_token_ttl_minutes",
        "recovery_requests_per_hour",
        "retention_days",
        "audit_retention_days",
        "refresh_token_purge_days",
        "expiration_sweep_interval_seconds",
        "retention_purge_interval_seconds",
        "sweep_batch_size",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("store_timeout_seconds", "cache_timeout_seconds")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
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
