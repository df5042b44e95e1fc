from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session security core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionguard", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/sessionguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors used by the test suite.",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessionguard", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionguard-clients", "JWT_AUDIENCE")
    csrf_secret: str | None = env_field(
        None,
        "CSRF_SECRET",
        description="Signing key for CSRF tokens; falls back to JWT_SECRET",
    )
    token_hash_secret: str | None = env_field(
        None,
        "TOKEN_HASH_SECRET",
        description="HMAC key for stored refresh token hashes; falls back to JWT_SECRET",
    )
    password_pepper: str | None = env_field(
        None,
        "PASSWORD_PEPPER",
        description="Optional server-side pepper mixed into password hashes",
    )

    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    reset_token_ttl_minutes: int = env_field(15, "RESET_TOKEN_TTL_MINUTES")
    csrf_token_ttl_minutes: int = env_field(60, "CSRF_TOKEN_TTL_MINUTES")
    breach_revokes_all_devices: bool = env_field(
        False,
        "BREACH_REVOKES_ALL_DEVICES",
        description="Revoke every session of the user (not only the device) on refresh token reuse",
    )

    rate_limit_window_seconds: int = env_field(300, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_attempts: int = env_field(5, "RATE_LIMIT_MAX_ATTEMPTS")
    rate_limit_backoff_multiplier: float = env_field(
        2.0, "RATE_LIMIT_BACKOFF_MULTIPLIER"
    )
    rate_limit_max_backoff_seconds: int = env_field(
        2 * 60 * 60, "RATE_LIMIT_MAX_BACKOFF_SECONDS"
    )
    rate_limit_captcha_threshold: int = env_field(3, "RATE_LIMIT_CAPTCHA_THRESHOLD")
    rate_limit_lockout_threshold: int = env_field(10, "RATE_LIMIT_LOCKOUT_THRESHOLD")
    rate_limit_lockout_seconds: int = env_field(60 * 60, "RATE_LIMIT_LOCKOUT_SECONDS")

    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"],
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed browser origins",
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

    cleanup_interval_seconds: int = env_field(
        15 * 60,
        "CLEANUP_INTERVAL_SECONDS",
        description="Interval for purging expired sessions and reset tokens; 0 disables",
    )
    session_retention_days: int = env_field(
        30,
        "SESSION_RETENTION_DAYS",
        description="How long dead refresh sessions are kept for audit before purge",
    )

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

    @field_validator(
        "rate_limit_window_seconds",
        "rate_limit_max_attempts",
        "rate_limit_lockout_threshold",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "reset_token_ttl_minutes",
        "csrf_token_ttl_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("rate_limit_backoff_multiplier")
    @classmethod
    def _validate_multiplier(cls, value: float) -> float:
        if value < 1:
            raise ValueError("backoff multiplier must be >= 1")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so credentials stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/sessionguard"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

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
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def effective_csrf_secret(self) -> str:
        return self.csrf_secret or self.jwt_secret

    @property
    def effective_token_hash_secret(self) -> str:
        return self.token_hash_secret or self.jwt_secret


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
