from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from klearkarma.logging import get_logger

logger = get_logger(__name__)


class PasswordAlgo(str, Enum):
    """Password hashing algorithms accepted for new credentials."""

    PBKDF2_SHA256 = "pbkdf2_sha256"
    ARGON2ID = "argon2id"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the marketplace API."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    data_root: str = env_field("/srv/klearkarma", "DATA_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enable deterministic testing behaviors and runtime resets.",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Deadline for a single key-value call; exceeded calls fail without retry",
    )
    scan_limit: int = env_field(
        1000, "SCAN_LIMIT", description="Upper bound on keys read by one prefix scan"
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("klear-karma-api", "JWT_ISSUER")
    jwt_audience: str = env_field("klear-karma-app", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(24 * 60 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )
    password_reset_ttl_seconds: int = env_field(60 * 60, "PASSWORD_RESET_TTL_SECONDS")
    email_verification_ttl_seconds: int = env_field(
        24 * 60 * 60, "EMAIL_VERIFICATION_TTL_SECONDS"
    )
    clock_skew_seconds: int = env_field(
        60,
        "CLOCK_SKEW_SECONDS",
        description="Tolerance for tokens whose issued-at lies in the future",
    )
    password_algo: PasswordAlgo = env_field(PasswordAlgo.PBKDF2_SHA256, "PASSWORD_ALGO")
    pbkdf2_iterations: int = env_field(100_000, "PBKDF2_ITERATIONS", ge=100_000)
    auth_cookie_name: str = env_field("token", "AUTH_COOKIE_NAME")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
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

    @field_validator("password_algo")
    @classmethod
    def _validate_password_algo(cls, value: PasswordAlgo) -> PasswordAlgo:
        return PasswordAlgo(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _empty_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        data_root = Path(os.getenv("DATA_ROOT", "/srv/klearkarma"))
        secret_path = data_root / ".jwt_secret"

        try:
            data_root.mkdir(parents=True, exist_ok=True)
            os.chmod(data_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(data_root),
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
                dir=str(data_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make DATA_ROOT writable"
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
