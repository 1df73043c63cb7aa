from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from termingate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and request-security layer."""

    app_env: str = env_field("development", "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/termingate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/termingate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours; required for runtime resets.",
    )

    # Session cookie
    session_secret: str = env_field(None, "SESSION_SECRET", validate_default=True)
    session_cookie_name: str = env_field("sid", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(
        False,
        "SESSION_COOKIE_SECURE",
        description="Always mark the cookie Secure; https requests get it regardless",
    )
    session_ttl_minutes: int = env_field(
        120, "SESSION_TTL_MINUTES", description="Rolling idle lifetime of a stored session"
    )
    principal_max_age_minutes: int = env_field(
        120,
        "PRINCIPAL_MAX_AGE_MINUTES",
        description="Absolute lifetime of a login, measured from the login timestamp",
    )
    check_ip_consistency: bool = env_field(
        False,
        "CHECK_IP_CONSISTENCY",
        description="Destroy the session when the client IP differs from the login IP",
    )
    check_user_agent_consistency: bool = env_field(
        False,
        "CHECK_USER_AGENT_CONSISTENCY",
        description="Destroy the session when the user agent differs from the login user agent",
    )

    # Brute-force guard
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_step_minutes: int = env_field(2, "LOCKOUT_STEP_MINUTES")
    lockout_max_minutes: int = env_field(30, "LOCKOUT_MAX_MINUTES")
    attempt_idle_minutes: int = env_field(15, "ATTEMPT_IDLE_MINUTES")
    login_failure_delay_ms: int = env_field(
        100,
        "LOGIN_FAILURE_DELAY_MS",
        description="Minimum delay for unknown usernames; randomised up to twice this",
    )
    maintenance_interval_seconds: int = env_field(
        600,
        "MAINTENANCE_INTERVAL_SECONDS",
        description="Period of the background sweep of counters, sessions and events",
    )

    # Rate limits per route bucket
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    public_rate_limit: int = env_field(200, "PUBLIC_RATE_LIMIT")
    public_rate_limit_window_seconds: int = env_field(900, "PUBLIC_RATE_LIMIT_WINDOW_SECONDS")
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_limit_window_seconds: int = env_field(900, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    anfrage_form_rate_limit: int = env_field(10, "ANFRAGE_FORM_RATE_LIMIT")
    anfrage_form_rate_limit_window_seconds: int = env_field(
        1800, "ANFRAGE_FORM_RATE_LIMIT_WINDOW_SECONDS"
    )
    admin_rate_limit: int = env_field(300, "ADMIN_RATE_LIMIT")
    admin_rate_limit_window_seconds: int = env_field(900, "ADMIN_RATE_LIMIT_WINDOW_SECONDS")

    # Security monitoring and alert delivery
    enable_security_alerts: bool = env_field(False, "ENABLE_SECURITY_ALERTS")
    security_email: str | None = env_field(None, "SECURITY_EMAIL")
    security_webhook_url: str | None = env_field(None, "SECURITY_WEBHOOK_URL")
    security_event_window_minutes: int = env_field(10, "SECURITY_EVENT_WINDOW_MINUTES")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Termingate Security", "EMAIL_FROM_NAME")

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
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @field_validator(
        "session_ttl_minutes",
        "principal_max_age_minutes",
        "max_login_attempts",
        "lockout_step_minutes",
        "lockout_max_minutes",
        "attempt_idle_minutes",
        "maintenance_interval_seconds",
        "security_event_window_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("session_cookie_name")
    @classmethod
    def _validate_cookie_name(cls, value: str) -> str:
        if not value or any(ch in value for ch in " ;,="):
            raise ValueError("invalid cookie name")
        return value

    @field_validator("session_secret", mode="before")
    @classmethod
    def _ensure_session_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so signed cookies survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/termingate"))
        secret_path = fs_root / ".session_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "session_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "session_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            # Write to a temp file and rename for atomic replacement
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".session_secret_", suffix=".tmp"
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
            logger.error(
                "session_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist session secret; set SESSION_SECRET or make SHARED_FS_ROOT writable"
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
