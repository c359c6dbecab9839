from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authkit.logging import get_logger

logger = get_logger(__name__)


class TokenCacheBackend(str, Enum):
    """Where issued tokens are indexed for revocation."""

    REDIS = "redis"
    MEMORY = "memory"
    NONE = "none"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field("postgresql://localhost:5432/authkit", "DATABASE_URL")
    database_statement_timeout_ms: int = env_field(
        5000, "DATABASE_STATEMENT_TIMEOUT_MS", ge=1
    )
    database_pool_timeout_seconds: float = env_field(
        5.0, "DATABASE_POOL_TIMEOUT_SECONDS", gt=0
    )
    database_connect_retries: int = env_field(
        5,
        "DATABASE_CONNECT_RETRIES",
        ge=1,
        description="Connection attempts at startup before giving up",
    )
    database_connect_backoff_seconds: float = env_field(
        2.0,
        "DATABASE_CONNECT_BACKOFF_SECONDS",
        ge=0,
        description="Initial delay between connection attempts; doubles on each retry",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    token_cache_backend: TokenCacheBackend = env_field(
        TokenCacheBackend.REDIS, "TOKEN_CACHE_BACKEND"
    )
    cache_operation_timeout_seconds: float = env_field(
        1.0, "CACHE_OPERATION_TIMEOUT_SECONDS", gt=0
    )
    token_revocation_denylist: bool = env_field(
        True,
        "TOKEN_REVOCATION_DENYLIST",
        description="Write revocation markers so revoked tokens stay rejected after a cache miss",
    )
    state_dir: str = env_field("/srv/authkit", "STATE_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync cache client, no retries)",
    )
    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authkit", "JWT_ISSUER")
    jwt_expiration_hours: int = env_field(24, "JWT_EXPIRATION_HOURS", ge=1)
    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str = env_field(
        "http://localhost:8080/auth/callback", "OAUTH_REDIRECT_URI"
    )
    oauth_timeout_seconds: float = env_field(10.0, "OAUTH_TIMEOUT_SECONDS", gt=0)
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    default_language: str = env_field("en", "DEFAULT_LANGUAGE")

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

    @field_validator("token_cache_backend")
    @classmethod
    def _validate_cache_backend(cls, value: TokenCacheBackend) -> TokenCacheBackend:
        return TokenCacheBackend(value)

    @field_validator("oauth_redirect_uri")
    @classmethod
    def _strip_redirect_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        state_dir = Path(os.getenv("STATE_DIR", "/srv/authkit"))
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            # directory may already exist with different ownership (containers)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup", error=str(exc), path=str(state_dir)
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
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
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
                "Unable to persist JWT secret; set JWT_SECRET env var or make STATE_DIR writable"
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
