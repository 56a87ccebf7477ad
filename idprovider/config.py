from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from idprovider.logging import get_logger

logger = get_logger(__name__)


class SigningAlgorithm(str, Enum):
    """HMAC algorithms accepted for access-token signatures."""

    HS256 = "HS256"
    HS384 = "HS384"
    HS512 = "HS512"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity provider."""

    database_url: str = env_field(
        "postgresql://localhost:5432/idprovider", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/idprovider", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI: sync Redis client, no startup worker.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("idprovider", "JWT_ISSUER")
    jwt_algorithm: SigningAlgorithm = env_field(SigningAlgorithm.HS256, "JWT_ALGORITHM")
    access_token_ttl_ms: int = env_field(
        15 * 60 * 1000,
        "JWT_EXPIRATION_MS",
        description="Access token lifetime in milliseconds",
    )
    refresh_token_ttl_ms: int = env_field(
        30 * 24 * 60 * 60 * 1000,
        "JWT_REFRESH_EXPIRATION_MS",
        description="Refresh token lifetime in milliseconds",
    )
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS")
    token_cleanup_interval_seconds: int = env_field(
        60 * 60,
        "TOKEN_CLEANUP_INTERVAL_SECONDS",
        description="How often expired refresh tokens and blacklist rows are swept",
    )
    cleanup_worker_enabled: bool = env_field(True, "CLEANUP_WORKER_ENABLED")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: SigningAlgorithm) -> SigningAlgorithm:
        return SigningAlgorithm(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("access_token_ttl_ms", "refresh_token_ttl_ms")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if int(value) <= 0:
            raise ValueError("token TTL must be positive")
        return int(value)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/idprovider"))
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
        tmp_path: str | None = None
        try:
            # Atomic write: temp file then rename
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
    def access_token_ttl_seconds(self) -> int:
        return max(1, self.access_token_ttl_ms // 1000)

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return max(1, self.refresh_token_ttl_ms // 1000)


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
