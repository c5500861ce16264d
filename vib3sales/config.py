from __future__ import annotations

import os
import re
import secrets
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from vib3sales.logging import get_logger

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def parse_duration(value: str) -> timedelta:
    """Parse ``30s``/``15m``/``12h``/``7d`` style lifetimes.

    A bare number is read as days.
    """
    match = _DURATION_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"invalid duration '{value}'; expected e.g. 7d, 12h, 30m, 45s")
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit or "d"]: int(amount)})


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth and CRM service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/vib3sales", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/vib3sales", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("vib3sales", "JWT_ISSUER")
    jwt_audience: str = env_field("vib3sales-clients", "JWT_AUDIENCE")
    jwt_expires_in: str = env_field(
        "7d", "JWT_EXPIRES_IN", description="Access token lifetime (s/m/h/d suffix)"
    )
    refresh_token_expires_in: str = env_field(
        "30d",
        "REFRESH_TOKEN_EXPIRES_IN",
        description="Refresh token lifetime (s/m/h/d suffix)",
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", gt=0)
    email_verification_ttl_hours: int = env_field(
        24, "EMAIL_VERIFICATION_TTL_HOURS", gt=0
    )
    # Login throttling
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", gt=0)
    login_attempt_window_ms: int = env_field(
        900_000, "LOGIN_ATTEMPT_WINDOW", gt=0, description="Window in milliseconds"
    )
    # Password hashing cost bounds
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1, le=10)
    argon2_memory_cost: int = env_field(
        65536, "ARGON2_MEMORY_COST", ge=8192, le=262144, description="KiB"
    )
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(
        "noreply@vib3ideasales.com", "EMAIL_FROM_ADDRESS"
    )
    email_from_name: str = env_field("Vib3 Idea Sales", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:5000", "APP_BASE_URL")
    email_send_timeout_seconds: float = env_field(
        10.0, "EMAIL_SEND_TIMEOUT_SECONDS", gt=0
    )
    # Web hardening
    csrf_token_ttl_hours: int = env_field(24, "CSRF_TOKEN_TTL_HOURS", gt=0)
    cleanup_interval_seconds: int = env_field(
        3600, "CLEANUP_INTERVAL_SECONDS", description="CSRF and login attempt sweep cadence"
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")
    force_https: bool = env_field(False, "FORCE_HTTPS")
    auth_cookie_secure: bool = env_field(True, "AUTH_COOKIE_SECURE")
    api_rate_limit: int = env_field(
        100, "API_RATE_LIMIT", ge=0, description="requests per client IP per window on /api/auth; 0 disables"
    )
    api_rate_limit_window_seconds: int = env_field(900, "API_RATE_LIMIT_WINDOW_SECONDS", gt=0)
    # CRM
    crm_max_tags: int = env_field(12, "CRM_MAX_TAGS", gt=0)

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
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_expires_in", "refresh_token_expires_in")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        parse_duration(value)
        return value.strip()

    @model_validator(mode="after")
    def _access_within_refresh(self) -> "Settings":
        if self.access_token_ttl > self.refresh_token_ttl:
            raise ValueError("JWT_EXPIRES_IN must not exceed REFRESH_TOKEN_EXPIRES_IN")
        return self

    @property
    def access_token_ttl(self) -> timedelta:
        return parse_duration(self.jwt_expires_in)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return parse_duration(self.refresh_token_expires_in)

    @property
    def login_attempt_window(self) -> timedelta:
        return timedelta(milliseconds=self.login_attempt_window_ms)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/vib3sales"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # directory may be owned by another user inside containers
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
