from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hikariauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process configuration for the auth service.

    Every field names the environment variable it is read from; values in a
    local ``.env`` file are used when the variable is not exported.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/hikari_chat", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key_prefix: str = env_field("hikari:", "REDIS_KEY_PREFIX")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(
        False,
        "ALLOW_REDIS_FALLBACK_DEV",
        description="Use the in-process cache when Redis is unreachable (dev only)",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("hikari-chat", "JWT_ISSUER")
    jwt_audience: str = env_field("hikari-chat-web", "JWT_AUDIENCE")
    token_leeway_seconds: int = env_field(
        30, "TOKEN_LEEWAY_SECONDS", description="Clock skew tolerated on expiry"
    )

    # Password hashing (argon2id)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # Lifetimes in seconds
    session_ttl_seconds: int = env_field(7 * 86400, "SESSION_TTL_SECONDS")
    remember_me_ttl_seconds: int = env_field(30 * 86400, "REMEMBER_ME_TTL_SECONDS")
    verification_ttl_seconds: int = env_field(3600, "VERIFICATION_TTL_SECONDS")
    password_reset_ttl_seconds: int = env_field(3600, "PASSWORD_RESET_TTL_SECONDS")

    # Rate limits: attempts per window per client IP
    rate_limit_window_seconds: int = env_field(3600, "RATE_LIMIT_WINDOW_SECONDS")
    login_failed_limit: int = env_field(5, "LOGIN_FAILED_LIMIT")
    signup_rate_limit: int = env_field(5, "SIGNUP_RATE_LIMIT")
    password_reset_rate_limit: int = env_field(3, "PASSWORD_RESET_RATE_LIMIT")
    password_reset_confirm_rate_limit: int = env_field(
        5, "PASSWORD_RESET_CONFIRM_RATE_LIMIT"
    )
    verification_rate_limit: int = env_field(5, "VERIFICATION_RATE_LIMIT")
    resend_verification_rate_limit: int = env_field(
        3, "RESEND_VERIFICATION_RATE_LIMIT"
    )

    # Audit retention and anomaly thresholds
    audit_retention_days: int = env_field(365, "AUDIT_RETENTION_DAYS")
    anomaly_verification_ip_threshold: int = env_field(
        3, "ANOMALY_VERIFICATION_IP_THRESHOLD"
    )
    anomaly_verification_window_hours: int = env_field(
        24, "ANOMALY_VERIFICATION_WINDOW_HOURS"
    )
    anomaly_failure_threshold: int = env_field(10, "ANOMALY_FAILURE_THRESHOLD")
    anomaly_failure_window_hours: int = env_field(24, "ANOMALY_FAILURE_WINDOW_HOURS")
    anomaly_signup_threshold: int = env_field(5, "ANOMALY_SIGNUP_THRESHOLD")
    anomaly_signup_window_hours: int = env_field(1, "ANOMALY_SIGNUP_WINDOW_HOURS")

    # Email delivery; SMTP is used only when a host is configured
    app_base_url: str = env_field("http://localhost:5173", "APP_BASE_URL")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str = env_field("noreply@hikari.chat", "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Hikari Chat", "EMAIL_FROM_NAME")

    # HTTP surface
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )
    trusted_proxies: list[str] = env_field(
        [],
        "TRUSTED_PROXIES",
        description="Peers (addresses or CIDR ranges) whose forwarding headers are believed",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def env_names(cls) -> dict[str, str]:
        """Map each field to the environment variable it is read from."""
        names = {}
        for name, info in cls.model_fields.items():
            extra = info.json_schema_extra if isinstance(info.json_schema_extra, dict) else {}
            names[name] = extra.get("env", name.upper())
        return names

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Build settings from the process environment, then ``env_file``."""
        sources = (os.environ, dotenv_values(env_file))
        values: dict[str, Any] = {}
        for name, env_name in cls.env_names().items():
            for source in sources:
                raw = source.get(env_name)
                if raw is not None:
                    values[name] = raw
                    break
        return cls(**values)

    @field_validator("cors_allow_origins", "trusted_proxies", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_key_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        if value and not value.endswith(":"):
            return value + ":"
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < 32 and not self.test_mode:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return self
        if self.test_mode:
            logger.warning("jwt_secret_missing_test_mode")
            self.jwt_secret = "test-only-signing-secret-not-for-production-use"
            return self
        raise ValueError("JWT_SECRET must be set outside of TEST_MODE")


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
