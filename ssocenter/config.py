from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ssocenter.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authorization server."""

    database_url: str = env_field(
        "postgresql://localhost:5432/ssocenter", "DATABASE_URL"
    )
    database_statement_timeout_ms: int = env_field(
        5000,
        "DATABASE_STATEMENT_TIMEOUT_MS",
        description="Server-side statement timeout applied to every pooled connection",
    )
    database_pool_timeout_seconds: float = env_field(
        5.0,
        "DATABASE_POOL_TIMEOUT_SECONDS",
        description="Maximum wait for a pooled connection before failing the request",
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, resettable runtime).",
    )

    session_secret: str | None = env_field(
        None, "SESSION_SECRET", validate_default=True
    )
    session_cookie_name: str = env_field("sso_ticket", "SESSION_COOKIE_NAME")
    session_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "SESSION_TTL_MINUTES",
        description="Lifetime of a browser login session ticket",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    login_path: str = env_field("/login", "LOGIN_PATH")

    authorization_code_ttl_seconds: int = env_field(
        300, "AUTHORIZATION_CODE_TTL_SECONDS"
    )
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    default_scope: str = env_field("default", "DEFAULT_SCOPE")

    revocation_timeout_seconds: float = env_field(
        2.0,
        "REVOCATION_TIMEOUT_SECONDS",
        description="Upper bound for a single shared-cache call on the revocation path",
    )
    revocation_fail_closed: bool = env_field(
        False,
        "REVOCATION_FAIL_CLOSED",
        description="Treat sessions as revoked when the shared cache cannot be reached",
    )
    reaper_enabled: bool = env_field(True, "REAPER_ENABLED")
    reaper_interval_seconds: int = env_field(3600, "REAPER_INTERVAL_SECONDS")

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
        "authorization_code_ttl_seconds",
        "access_token_ttl_seconds",
        "refresh_token_ttl_days",
        "session_ttl_minutes",
        "reaper_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("revocation_timeout_seconds", "database_pool_timeout_seconds")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @field_validator("login_path")
    @classmethod
    def _validate_login_path(cls, value: str) -> str:
        if not value.startswith("/") or value.startswith("//"):
            raise ValueError("login_path must be a local absolute path")
        return value

    @field_validator("session_secret")
    @classmethod
    def _ensure_session_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning("session_secret_short", length=len(value))
            return value
        # Tickets signed with a generated secret do not survive a restart
        # and are not portable across nodes.
        logger.warning(
            "session_secret_generated",
            message="SESSION_SECRET is not set; generated an ephemeral signing key",
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
