from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatekeep.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environment; production turns on secure cookies."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings, constructed once at startup and passed to each service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    api_prefix: str = env_field("/api/v1", "API_PREFIX")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    shared_fs_root: str = env_field("/srv/gatekeep", "SHARED_FS_ROOT")
    persist_store: bool = env_field(
        True,
        "PERSIST_STORE",
        description="Write the in-memory credential store to SHARED_FS_ROOT",
    )

    # Session tokens
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("gatekeep", "JWT_ISSUER")
    jwt_audience: str = env_field("gatekeep-clients", "JWT_AUDIENCE")
    token_ttl_minutes: int = env_field(
        60 * 24 * 90,
        "TOKEN_TTL_MINUTES",
        description="Session token lifetime in minutes",
        gt=0,
    )
    cookie_expires_days: int = env_field(
        90, "COOKIE_EXPIRES_DAYS", description="Lifetime of the jwt cookie", gt=0
    )

    # Passwords and reset
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=8)
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH", le=1024)
    reset_token_ttl_minutes: int = env_field(
        10,
        "RESET_TOKEN_TTL_MINUTES",
        description="How long an emailed reset token stays valid",
        gt=0,
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatekeep", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore", frozen=True, validate_default=True)

    @property
    def secure_cookies(self) -> bool:
        return self.environment == Environment.PRODUCTION

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
            elif env_file_values.get(env_name) is not None:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = "/" + value.strip("/")
        return "" if value == "/" else value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/gatekeep"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
            else:
                if len(persisted) >= 32:
                    return persisted

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Write to temp file then rename
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
