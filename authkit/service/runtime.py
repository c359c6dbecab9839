from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis import RedisError

from authkit.config import TokenCacheBackend, get_settings, reset_settings_cache
from authkit.logging import get_logger
from authkit.service.auth import AuthService
from authkit.service.i18n import TranslationCatalog
from authkit.service.oauth import OAuthBridge
from authkit.service.passwords import CredentialVerifier
from authkit.service.tokens import TokenAuthority
from authkit.storage.memory import MemoryStore
from authkit.storage.postgres import PostgresStore
from authkit.storage.redis_cache import RedisTokenCache, SyncRedisTokenCache
from authkit.storage.token_cache import MemoryTokenCache, NullTokenCache, TokenCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            token_cache_backend=self.settings.token_cache_backend.value,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore()
            else:
                retries = 1 if self.settings.test_mode else self.settings.database_connect_retries
                self.store = PostgresStore(
                    self.settings.database_url,
                    statement_timeout_ms=self.settings.database_statement_timeout_ms,
                    pool_timeout=self.settings.database_pool_timeout_seconds,
                    connect_retries=retries,
                    connect_backoff=self.settings.database_connect_backoff_seconds,
                )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: TokenCache = self._build_cache()

        self.tokens = TokenAuthority(
            self.settings.jwt_secret,
            expiration=timedelta(hours=self.settings.jwt_expiration_hours),
            issuer=self.settings.jwt_issuer,
            cache=self.cache,
            denylist=self.settings.token_revocation_denylist,
        )
        if self.settings.test_mode:
            # cheap parameters keep the suite fast; production hashes use the defaults
            verifier = CredentialVerifier(time_cost=1, memory_cost=8 * 1024, parallelism=1)
        else:
            verifier = CredentialVerifier()
        self.oauth = OAuthBridge.from_settings(self.settings)
        self.auth = AuthService(
            self.store, self.tokens, verifier=verifier, oauth=self.oauth
        )
        self.translations = TranslationCatalog(
            default_language=self.settings.default_language
        )
        logger.info("runtime_ready", oauth_providers=self.oauth.configured)

    def _build_cache(self) -> TokenCache:
        backend = self.settings.token_cache_backend
        if backend == TokenCacheBackend.NONE:
            logger.info("token_cache_disabled")
            return NullTokenCache()
        if backend == TokenCacheBackend.MEMORY:
            return MemoryTokenCache()

        redis_error: Exception | None = None
        try:
            # Use sync Redis client in test mode to avoid event loop issues
            if self.settings.test_mode:
                cache = SyncRedisTokenCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.cache_operation_timeout_seconds,
                )
            else:
                cache = RedisTokenCache(
                    self.settings.redis_url,
                    operation_timeout=self.settings.cache_operation_timeout_seconds,
                )
            cache.verify_connection()
            return cache
        except (RedisError, OSError) as exc:
            redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for token revocation; start Redis, set "
                "TOKEN_CACHE_BACKEND=none, or set ALLOW_REDIS_FALLBACK_DEV=true for a local fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return MemoryTokenCache()

    async def close(self) -> None:
        await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing runtime,
    then a second check under the lock before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                asyncio.run(runtime.close())
            except RuntimeError:
                # called from inside a running loop; the old runtime is dropped as-is
                logger.warning("runtime_close_skipped")

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
