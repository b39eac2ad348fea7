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

from rimadmin.logging import get_logger

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str | int) -> timedelta:
    """Parse a token lifetime such as ``"1h"``, ``"7d"``, ``"90m"`` or ``3600``.

    Bare numbers are seconds.
    """
    if isinstance(value, int):
        if value <= 0:
            raise ValueError("duration must be positive")
        return timedelta(seconds=value)
    match = _DURATION_PATTERN.match(str(value).lower())
    if not match:
        raise ValueError(f"invalid duration '{value}'")
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError("duration must be positive")
    return timedelta(seconds=amount * _DURATION_UNITS[match.group(2)])


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Read a persisted signing secret from SHARED_FS_ROOT, creating it if absent."""
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/rimadmin"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Mounted volumes may not allow chmod
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup_failed",
            error=str(exc),
            path=str(fs_root),
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the admin auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/rimadmin", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/rimadmin", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables in-process fallbacks and runtime resets for tests.",
    )
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting OTP secrets in the memory store",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_expiration: str = env_field("1h", "JWT_EXPIRATION")
    jwt_refresh_expiration: str = env_field("7d", "JWT_REFRESH_EXPIRATION")
    jwt_issuer: str = env_field("rim-admin", "JWT_ISSUER")
    jwt_audience: str = env_field("rim-admin-portal", "JWT_AUDIENCE")

    # Multi-factor sessions
    totp_issuer: str = env_field("RIM Admin", "TOTP_ISSUER")
    pending_session_ttl_minutes: int = env_field(10, "PENDING_SESSION_TTL_MINUTES")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    mfa_max_attempts: int = env_field(
        5,
        "MFA_MAX_ATTEMPTS",
        description="Failed code attempts before a pending session is consumed; 0 disables the cap",
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # Rate limits (requests per minute)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field("noreply@rim.ng", "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("RIM Team", "EMAIL_FROM_NAME")
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
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
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("jwt_expiration", "jwt_refresh_expiration")
    @classmethod
    def _validate_lifetime(cls, value: str) -> str:
        parse_duration(value)
        return value

    @field_validator("pending_session_ttl_minutes", "password_reset_ttl_minutes", "backup_code_count")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("mfa_max_attempts")
    @classmethod
    def _validate_attempt_cap(cls, value: int) -> int:
        if value < 0:
            raise ValueError("mfa_max_attempts cannot be negative")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_jwt_refresh_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_refresh_secret")

    @model_validator(mode="after")
    def _distinct_signing_secrets(self):
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @property
    def access_token_lifetime(self) -> timedelta:
        return parse_duration(self.jwt_expiration)

    @property
    def refresh_token_lifetime(self) -> timedelta:
        return parse_duration(self.jwt_refresh_expiration)


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
