from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

import redis.asyncio as aioredis
from redis import Redis, RedisError
from redis.exceptions import WatchError

from authkit.logging import get_logger
from authkit.storage.errors import CacheUnavailable
from authkit.storage.token_cache import (
    forward_key,
    revoked_key,
    token_digest,
    user_index_key,
)

T = TypeVar("T")

logger = get_logger(__name__)

# attempts at bulk revocation while tokens keep landing in the same index
WATCH_RETRIES = 5


def _queue_revocations(pipe, digests, ttls, mark_revoked: bool) -> int:
    revoked = 0
    for digest, ttl in zip(digests, ttls):
        pipe.delete(forward_key(digest))
        # -2: key gone (expired), nothing left to revoke
        if ttl is None or int(ttl) == -2:
            continue
        if mark_revoked and int(ttl) > 0:
            pipe.set(revoked_key(digest), "1", ex=int(ttl))
        revoked += 1
    return revoked


class RedisTokenCache:
    """Redis-backed token cache.

    Layout:
        auth:token:<sha256>          -> user id, TTL = remaining token validity
        auth:user:<user id>:tokens   -> set of token digests, TTL refreshed on insert
        auth:token:revoked:<sha256>  -> "1", TTL = remaining token validity

    The reverse index TTL follows the most recently added token, so an older
    token that outlives it stays valid but can no longer be revoked in bulk.
    Bulk revocation WATCHes the index, so a token indexed mid-revoke is
    picked up by the retried transaction instead of surviving it.
    """

    DEFAULT_OPERATION_TIMEOUT = 1.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _run(self, op: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("token_cache_timeout", op=op, timeout=self.operation_timeout)
            raise CacheUnavailable(f"token cache {op} timed out") from exc
        except RedisError as exc:
            logger.warning("token_cache_error", op=op, error=str(exc))
            raise CacheUnavailable(f"token cache {op} failed") from exc

    async def set(self, token: str, user_id: int, ttl_seconds: int) -> None:
        digest = token_digest(token)
        ttl = max(1, int(ttl_seconds))
        pipe = self.client.pipeline()
        pipe.set(forward_key(digest), str(user_id), ex=ttl)
        pipe.sadd(user_index_key(user_id), digest)
        pipe.expire(user_index_key(user_id), ttl)
        await self._run("set", pipe.execute())

    async def get(self, token: str) -> Optional[int]:
        raw = await self._run("get", self.client.get(forward_key(token_digest(token))))
        return int(raw) if raw is not None else None

    async def delete(self, token: str, *, revoked_ttl: Optional[int] = None) -> None:
        digest = token_digest(token)
        key = forward_key(digest)
        owner = await self._run("delete", self.client.get(key))
        pipe = self.client.pipeline()
        pipe.delete(key)
        if owner is not None:
            pipe.srem(user_index_key(int(owner)), digest)
        if revoked_ttl and revoked_ttl > 0:
            pipe.set(revoked_key(digest), "1", ex=int(revoked_ttl))
        await self._run("delete", pipe.execute())

    async def delete_all_for_user(self, user_id: int, *, mark_revoked: bool = False) -> int:
        return await self._run("delete_all", self._delete_all_watched(user_id, mark_revoked))

    async def _read_index(self, pipe, index_key: str) -> list[str]:
        return list(await pipe.smembers(index_key))

    async def _delete_all_watched(self, user_id: int, mark_revoked: bool) -> int:
        """Revoke the indexed tokens in one MULTI, retried if the index changes meanwhile."""
        index_key = user_index_key(user_id)
        async with self.client.pipeline(transaction=True) as pipe:
            for _ in range(WATCH_RETRIES):
                try:
                    await pipe.watch(index_key)
                    digests = await self._read_index(pipe, index_key)
                    if not digests:
                        return 0
                    ttls = [await pipe.ttl(forward_key(digest)) for digest in digests]
                    pipe.multi()
                    revoked = _queue_revocations(pipe, digests, ttls, mark_revoked)
                    pipe.delete(index_key)
                    await pipe.execute()
                    return revoked
                except WatchError:
                    logger.info("token_cache_index_changed", user_id=user_id)
        raise WatchError(f"token index for user {user_id} kept changing")

    async def is_revoked(self, token: str) -> bool:
        key = revoked_key(token_digest(token))
        return bool(await self._run("is_revoked", self.client.exists(key)))

    async def ping(self) -> bool:
        try:
            return bool(await self._run("ping", self.client.ping()))
        except CacheUnavailable:
            return False

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisTokenCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisTokenCache. Socket timeouts bound every call.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    @staticmethod
    def _fail(op: str, exc: RedisError) -> CacheUnavailable:
        logger.warning("token_cache_error", op=op, error=str(exc))
        return CacheUnavailable(f"token cache {op} failed")

    async def set(self, token: str, user_id: int, ttl_seconds: int) -> None:
        digest = token_digest(token)
        ttl = max(1, int(ttl_seconds))
        try:
            pipe = self._sync_client.pipeline()
            pipe.set(forward_key(digest), str(user_id), ex=ttl)
            pipe.sadd(user_index_key(user_id), digest)
            pipe.expire(user_index_key(user_id), ttl)
            pipe.execute()
        except RedisError as exc:
            raise self._fail("set", exc) from exc

    async def get(self, token: str) -> Optional[int]:
        try:
            raw = self._sync_client.get(forward_key(token_digest(token)))
        except RedisError as exc:
            raise self._fail("get", exc) from exc
        return int(raw) if raw is not None else None

    async def delete(self, token: str, *, revoked_ttl: Optional[int] = None) -> None:
        digest = token_digest(token)
        key = forward_key(digest)
        try:
            owner = self._sync_client.get(key)
            pipe = self._sync_client.pipeline()
            pipe.delete(key)
            if owner is not None:
                pipe.srem(user_index_key(int(owner)), digest)
            if revoked_ttl and revoked_ttl > 0:
                pipe.set(revoked_key(digest), "1", ex=int(revoked_ttl))
            pipe.execute()
        except RedisError as exc:
            raise self._fail("delete", exc) from exc

    async def delete_all_for_user(self, user_id: int, *, mark_revoked: bool = False) -> int:
        try:
            return self._delete_all_watched(user_id, mark_revoked)
        except RedisError as exc:
            raise self._fail("delete_all", exc) from exc

    def _read_index(self, pipe, index_key: str) -> list[str]:
        return list(pipe.smembers(index_key))

    def _delete_all_watched(self, user_id: int, mark_revoked: bool) -> int:
        index_key = user_index_key(user_id)
        with self._sync_client.pipeline(transaction=True) as pipe:
            for _ in range(WATCH_RETRIES):
                try:
                    pipe.watch(index_key)
                    digests = self._read_index(pipe, index_key)
                    if not digests:
                        return 0
                    ttls = [pipe.ttl(forward_key(digest)) for digest in digests]
                    pipe.multi()
                    revoked = _queue_revocations(pipe, digests, ttls, mark_revoked)
                    pipe.delete(index_key)
                    pipe.execute()
                    return revoked
                except WatchError:
                    logger.info("token_cache_index_changed", user_id=user_id)
        raise WatchError(f"token index for user {user_id} kept changing")

    async def is_revoked(self, token: str) -> bool:
        try:
            return bool(self._sync_client.exists(revoked_key(token_digest(token))))
        except RedisError as exc:
            raise self._fail("is_revoked", exc) from exc

    async def ping(self) -> bool:
        try:
            return bool(self._sync_client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
