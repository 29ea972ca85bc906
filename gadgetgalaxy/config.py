from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gadgetgalaxy.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(fs_root: Path, filename: str) -> str:
    """Return a persisted signing secret, generating one on first use."""
    secret_path = fs_root / filename
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("signing_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
    try:
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        logger.error("signing_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Process-wide configuration, loaded once at startup."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/gadgetgalaxy", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/gadgetgalaxy", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour; allows runtime resets and in-memory fallbacks.",
    )

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)

    # Password hashing (argon2id work factor)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    # Lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(60, "LOCKOUT_MINUTES", ge=1)

    # Verification links
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")

    # Google sign-in
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_clock_skew_seconds: int = env_field(60, "GOOGLE_CLOCK_SKEW_SECONDS", ge=0)

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gadget Galaxy", "EMAIL_FROM_NAME")

    # Image host (Cloudinary-compatible signed upload)
    image_host_cloud_name: str | None = env_field(None, "IMAGE_HOST_CLOUD_NAME")
    image_host_api_key: str | None = env_field(None, "IMAGE_HOST_API_KEY")
    image_host_api_secret: str | None = env_field(None, "IMAGE_HOST_API_SECRET")
    image_host_base_url: str = env_field(
        "https://api.cloudinary.com/v1_1", "IMAGE_HOST_BASE_URL"
    )
    image_folder_users: str = env_field("gadget-galaxy/users", "IMAGE_FOLDER_USERS")
    default_user_image_url: str = env_field(
        "https://res.cloudinary.com/demo/image/upload/default_avatar.png",
        "DEFAULT_USER_IMAGE_URL",
    )
    max_upload_bytes: int = env_field(5 * 1024 * 1024, "MAX_UPLOAD_BYTES", ge=1)

    # HTTP surface
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")

    # Rate limits (requests per window)
    auth_rate_limit_per_window: int = env_field(10, "AUTH_RATE_LIMIT_PER_WINDOW")
    auth_rate_limit_window_seconds: int = env_field(15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    api_rate_limit_per_window: int = env_field(100, "API_RATE_LIMIT_PER_WINDOW")
    api_rate_limit_window_seconds: int = env_field(15 * 60, "API_RATE_LIMIT_WINDOW_SECONDS")
    resend_verification_limit_per_hour: int = env_field(5, "RESEND_VERIFICATION_LIMIT_PER_HOUR")
    profile_rate_limit_per_window: int = env_field(20, "PROFILE_RATE_LIMIT_PER_WINDOW")
    check_rate_limit_per_window: int = env_field(30, "CHECK_RATE_LIMIT_PER_WINDOW")
    admin_rate_limit_per_hour: int = env_field(50, "ADMIN_RATE_LIMIT_PER_HOUR")

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
        return self.environment == Environment.PRODUCTION

    @property
    def cookie_secure(self) -> bool:
        return self.is_production

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            return Environment(value.strip().lower())
        return Environment(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @model_validator(mode="after")
    def _ensure_signing_secrets(self) -> "Settings":
        # Access and refresh tokens must never share a key
        fs_root = Path(self.shared_fs_root)
        if not self.jwt_secret:
            self.jwt_secret = _load_or_create_secret(fs_root, ".jwt_secret")
        if not self.jwt_refresh_secret:
            self.jwt_refresh_secret = _load_or_create_secret(fs_root, ".jwt_refresh_secret")
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
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
