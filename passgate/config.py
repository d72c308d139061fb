from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from passgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/passgate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/passgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-process fallbacks.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("passgate", "JWT_ISSUER")
    jwt_audience: str = env_field("passgate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of signed bearer tokens (1-60 minutes)",
    )
    session_ttl_days: int = env_field(
        30,
        "SESSION_TTL_DAYS",
        description="Refresh-token session lifetime; also the refresh cookie max-age",
    )
    verification_token_ttl_hours: int = env_field(24, "VERIFICATION_TOKEN_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # Account lockout
    max_failed_logins: int = env_field(
        5,
        "MAX_FAILED_LOGINS",
        description="Consecutive failed logins before the account is locked",
    )
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES")

    # argon2id cost parameters (argon2-cffi defaults)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # Timeouts for every collaborator round-trip
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    email_timeout_seconds: float = env_field(10.0, "EMAIL_TIMEOUT_SECONDS")

    # Email service settings
    email_delivery_required: bool = env_field(
        False,
        "EMAIL_DELIVERY_REQUIRED",
        description="Fail signup/resend-verification when the verification email cannot be sent",
    )
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Passgate", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    cookie_secure: bool = env_field(
        True,
        "COOKIE_SECURE",
        description="Mark the refresh cookie Secure; disable only for local plain-http development",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    cors_allow_origins: str | None = env_field(
        None,
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated list of allowed browser origins",
    )
    default_currency: str = env_field("USD", "DEFAULT_CURRENCY")

    @property
    def cors_origins(self) -> list[str]:
        if not self.cors_allow_origins:
            return []
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

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
        "session_ttl_days",
        "verification_token_ttl_hours",
        "password_reset_ttl_minutes",
        "max_failed_logins",
        "lockout_minutes",
        "password_hash_time_cost",
        "password_hash_memory_cost",
        "password_hash_parallelism",
    )
    @classmethod
    def _require_positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("store_timeout_seconds", "email_timeout_seconds")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be greater than zero")
        return value

    @field_validator("access_token_ttl_minutes")
    @classmethod
    def _bound_access_ttl(cls, value: int) -> int:
        if not 1 <= value <= 60:
            raise ValueError("access token TTL must be between 1 and 60 minutes")
        return value

    @field_validator("default_currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        code = (value or "").strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError("default currency must be a three-letter code")
        return code

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/passgate"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
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
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
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
