from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the gateway, identity store and two-factor flow."""

    redis_url: str = env_field(
        "redis://localhost:6379/0",
        "REDIS_URL",
        description="Shared cache for rate limits and session state; empty disables Redis",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits in-process cache fallbacks",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    secret_key: str | None = env_field(None, "SECRET_KEY", validate_default=True)
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Sessions
    session_cookie_name: str = env_field("authgate.session_token", "SESSION_COOKIE_NAME")
    session_ttl_seconds: int = env_field(
        24 * 60 * 60,
        "SESSION_TTL_SECONDS",
        description="Absolute session lifetime",
    )
    session_cache_seconds: int = env_field(
        30 * 60,
        "SESSION_CACHE_SECONDS",
        description="Validity cache TTL; always clamped to the absolute expiry",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Gateway routing
    auth_entry_path: str = env_field("/login", "AUTH_ENTRY_PATH")
    authenticated_home_path: str = env_field("/dashboard", "AUTHENTICATED_HOME_PATH")
    callback_param: str = env_field("callbackUrl", "CALLBACK_PARAM")
    protected_routes: list[str] = env_field(["/dashboard", "/admin"], "PROTECTED_ROUTES")
    admin_routes: list[str] = env_field(["/admin"], "ADMIN_ROUTES")
    auth_routes: list[str] = env_field(["/login", "/register"], "AUTH_ROUTES")
    auth_failure_cookie_name: str = env_field(
        "authgate.auth_check_failed", "AUTH_FAILURE_COOKIE_NAME"
    )
    auth_failure_ttl_seconds: int = env_field(60, "AUTH_FAILURE_TTL_SECONDS")

    # Rate limiting
    rate_limited_prefixes: list[str] = env_field(["/v1/auth"], "RATE_LIMITED_PREFIXES")
    rate_limit_capacity: int = env_field(10, "RATE_LIMIT_CAPACITY")
    rate_limit_window_seconds: int = env_field(10, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_fail_open: bool = env_field(
        True,
        "RATE_LIMIT_FAIL_OPEN",
        description="Let requests through when the rate-limit backend is unreachable",
    )
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Use the first X-Forwarded-For hop as the client IP",
    )

    # Two-factor
    two_factor_issuer: str = env_field("AuthGate", "TWO_FACTOR_ISSUER")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    two_factor_challenge_ttl_seconds: int = env_field(
        10 * 60, "TWO_FACTOR_CHALLENGE_TTL_SECONDS"
    )
    trusted_device_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60, "TRUSTED_DEVICE_TTL_SECONDS"
    )

    # Accounts
    trusted_origins: list[str] = env_field(["http://localhost:3000"], "TRUSTED_ORIGINS")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    require_email_verification: bool = env_field(False, "REQUIRE_EMAIL_VERIFICATION")
    bootstrap_admin_email: str | None = env_field(None, "BOOTSTRAP_ADMIN_EMAIL")
    bootstrap_admin_password: str | None = env_field(None, "BOOTSTRAP_ADMIN_PASSWORD")

    # Email delivery; without smtp_host messages are logged instead of sent
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthGate", "EMAIL_FROM_NAME")

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

    @field_validator(
        "protected_routes",
        "admin_routes",
        "auth_routes",
        "rate_limited_prefixes",
        "trusted_origins",
        mode="before",
    )
    @classmethod
    def _parse_list(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("protected_routes", "admin_routes", "auth_routes", "rate_limited_prefixes")
    @classmethod
    def _validate_path_prefixes(cls, value: list[str]) -> list[str]:
        normalized = []
        for prefix in value:
            if not prefix.startswith("/"):
                raise ValueError(f"route prefix must start with '/': {prefix!r}")
            normalized.append(prefix.rstrip("/") or "/")
        return normalized

    @field_validator(
        "session_ttl_seconds",
        "session_cache_seconds",
        "rate_limit_capacity",
        "rate_limit_window_seconds",
        "backup_code_count",
        "auth_failure_ttl_seconds",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("secret_key")
    @classmethod
    def _ensure_secret_key(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("SECRET_KEY must be at least 32 characters")
            return value
        # Signed cookies and encrypted secrets will not survive a restart
        logger.warning("secret_key_generated", reason="SECRET_KEY not set")
        return secrets.token_urlsafe(48)


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
