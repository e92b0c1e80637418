from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class RateLimitedEndpoint(str, Enum):
    """Endpoints that carry their own attempt budget."""

    LOGIN = "login"
    SIGNUP = "signup"
    TWO_FACTOR_VERIFY = "two_factor_verify"
    TWO_FACTOR_SETUP = "two_factor_setup"
    EMAIL_CHANGE = "email_change"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET = "password_reset"
    PASSWORD_RESET_CONFIRM = "password_reset_confirm"
    RESEND_VERIFICATION = "resend_verification"


class RateLimitPolicy(BaseModel):
    max_attempts: int = Field(..., ge=1)
    window_minutes: int = Field(..., ge=1)

    model_config = ConfigDict(frozen=True)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and other deterministic testing behaviors.",
    )

    # Sessions
    pending_session_ttl_minutes: int = env_field(
        15,
        "PENDING_SESSION_TTL_MINUTES",
        description="Lifetime of a session awaiting its second factor",
    )
    session_max_age_days: int = env_field(30, "SESSION_MAX_AGE_DAYS")
    session_cookie_name: str = env_field("session_token", "SESSION_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Two-factor
    totp_window: int = env_field(
        2,
        "TOTP_WINDOW",
        description="Accepted TOTP steps before/after the current one",
    )
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS")
    totp_issuer: str = env_field("authcore", "TOTP_ISSUER")
    backup_code_count: int = env_field(8, "BACKUP_CODE_COUNT")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material used to encrypt TOTP secrets at rest",
    )

    # argon2id cost for passwords and backup codes
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost_kib: int = env_field(65536, "ARGON2_MEMORY_COST_KIB")

    email_change_ttl_hours: int = env_field(24, "EMAIL_CHANGE_TTL_HOURS")

    # Signup verification and password reset links
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    require_verified_email: bool = env_field(
        True,
        "REQUIRE_VERIFIED_EMAIL",
        description="Refuse password login until the signup address is confirmed",
    )

    # CSRF double-submit cookie
    csrf_cookie_name: str = env_field("csrf_token", "CSRF_COOKIE_NAME")
    csrf_header_name: str = env_field("X-CSRF-Token", "CSRF_HEADER_NAME")
    csrf_cookie_max_age_seconds: int = env_field(60 * 60 * 24, "CSRF_COOKIE_MAX_AGE_SECONDS")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authcore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Rate limits: attempts per window (minutes)
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_window_minutes: int = env_field(15, "LOGIN_WINDOW_MINUTES")
    signup_max_attempts: int = env_field(3, "SIGNUP_MAX_ATTEMPTS")
    signup_window_minutes: int = env_field(60, "SIGNUP_WINDOW_MINUTES")
    two_factor_verify_max_attempts: int = env_field(5, "TWO_FACTOR_VERIFY_MAX_ATTEMPTS")
    two_factor_verify_window_minutes: int = env_field(15, "TWO_FACTOR_VERIFY_WINDOW_MINUTES")
    two_factor_setup_max_attempts: int = env_field(10, "TWO_FACTOR_SETUP_MAX_ATTEMPTS")
    two_factor_setup_window_minutes: int = env_field(15, "TWO_FACTOR_SETUP_WINDOW_MINUTES")
    email_change_max_attempts: int = env_field(3, "EMAIL_CHANGE_MAX_ATTEMPTS")
    email_change_window_minutes: int = env_field(24 * 60, "EMAIL_CHANGE_WINDOW_MINUTES")
    email_verification_max_attempts: int = env_field(5, "EMAIL_VERIFICATION_MAX_ATTEMPTS")
    email_verification_window_minutes: int = env_field(60, "EMAIL_VERIFICATION_WINDOW_MINUTES")
    password_change_max_attempts: int = env_field(10, "PASSWORD_CHANGE_MAX_ATTEMPTS")
    password_change_window_minutes: int = env_field(60, "PASSWORD_CHANGE_WINDOW_MINUTES")
    password_reset_max_attempts: int = env_field(3, "PASSWORD_RESET_MAX_ATTEMPTS")
    password_reset_window_minutes: int = env_field(60, "PASSWORD_RESET_WINDOW_MINUTES")
    password_reset_confirm_max_attempts: int = env_field(5, "PASSWORD_RESET_CONFIRM_MAX_ATTEMPTS")
    password_reset_confirm_window_minutes: int = env_field(
        60, "PASSWORD_RESET_CONFIRM_WINDOW_MINUTES"
    )
    resend_verification_max_attempts: int = env_field(3, "RESEND_VERIFICATION_MAX_ATTEMPTS")
    resend_verification_window_minutes: int = env_field(60, "RESEND_VERIFICATION_WINDOW_MINUTES")

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

    @field_validator("redis_url", "mfa_secret_key", "smtp_host")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None or not str(value).strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("totp_window")
    @classmethod
    def _validate_totp_window(cls, value: int) -> int:
        if value < 0 or value > 10:
            raise ValueError("TOTP_WINDOW must be between 0 and 10")
        return value

    def rate_limit_policy(self, endpoint: RateLimitedEndpoint | str) -> RateLimitPolicy:
        """Return the attempt budget configured for ``endpoint``."""
        name = RateLimitedEndpoint(endpoint).value
        return RateLimitPolicy(
            max_attempts=getattr(self, f"{name}_max_attempts"),
            window_minutes=getattr(self, f"{name}_window_minutes"),
        )


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
