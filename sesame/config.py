from __future__ import annotations

import os
from typing import Any
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sesame.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, read once at startup and passed to the services."""

    database_url: str = env_field("postgresql://localhost:5432/sesame", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/sesame", "SHARED_FS_ROOT")
    state_encryption_key: str | None = env_field(
        None,
        "STATE_ENCRYPTION_KEY",
        description="Key material for encrypting the memory store snapshot on disk.",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviors: in-memory challenge store, no Redis requirement.",
    )

    # Session policy
    session_ttl_days: int = env_field(30, "SESSION_TTL_DAYS", ge=1)
    session_renewal_threshold_days: int = env_field(
        7,
        "SESSION_RENEWAL_THRESHOLD_DAYS",
        ge=0,
        description="Sessions with less remaining lifetime than this are extended on validation.",
    )
    sweep_interval_seconds: int = env_field(
        3600,
        "SWEEP_INTERVAL_SECONDS",
        description="Interval of the background sweep of expired sessions and magic links; 0 disables it.",
    )

    # Magic links
    magic_link_ttl_minutes: int = env_field(15, "MAGIC_LINK_TTL_MINUTES", ge=1)

    # WebAuthn relying party
    rp_id: str = env_field("localhost", "RP_ID")
    rp_name: str = env_field("Sesame", "RP_NAME")
    rp_origin: str = env_field("http://localhost:8000", "RP_ORIGIN")
    passkey_challenge_ttl_seconds: int = env_field(300, "PASSKEY_CHALLENGE_TTL_SECONDS", ge=1)

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_SECRET")
    oauth_apple_client_id: str | None = env_field(None, "OAUTH_APPLE_CLIENT_ID")
    oauth_apple_client_secret: str | None = env_field(
        None,
        "OAUTH_APPLE_CLIENT_SECRET",
        description="Pre-signed client secret JWT issued for the Apple services id.",
    )
    oauth_redirect_uri: str | None = env_field(
        None,
        "OAUTH_REDIRECT_URI",
        description="Callback base, e.g. https://app.example.com/v1/auth/oauth; the provider name and /callback are appended.",
    )
    oauth_state_ttl_seconds: int = env_field(600, "OAUTH_STATE_TTL_SECONDS", ge=1)
    oauth_trust_unverified_email: bool = env_field(
        False,
        "OAUTH_TRUST_UNVERIFIED_EMAIL",
        description="Allow email-match account linking when the provider does not vouch for the email.",
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Sesame", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("rp_origin")
    @classmethod
    def _validate_rp_origin(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("RP_ORIGIN must be an http(s) origin")
        return value.rstrip("/")

    @model_validator(mode="after")
    def _check_session_window(self) -> "Settings":
        if self.session_renewal_threshold_days >= self.session_ttl_days:
            raise ValueError(
                "SESSION_RENEWAL_THRESHOLD_DAYS must be smaller than SESSION_TTL_DAYS"
            )
        if self.rp_origin.startswith("http://") and self.rp_id not in {"localhost", "127.0.0.1"}:
            logger.warning("insecure_rp_origin", rp_origin=self.rp_origin, rp_id=self.rp_id)
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
