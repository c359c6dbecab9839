from __future__ import annotations

import hashlib
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Set, Tuple


def token_digest(token: str) -> str:
    """Cache key material for a bearer token; the raw token is never stored."""
    return hashlib.sha256(token.encode()).hexdigest()


def forward_key(digest: str) -> str:
    return f"auth:token:{digest}"


def user_index_key(user_id: int) -> str:
    return f"auth:user:{user_id}:tokens"


def revoked_key(digest: str) -> str:
    return f"auth:token:revoked:{digest}"


class TokenCache(Protocol):
    """Forward index token -> user plus reverse index user -> tokens.

    Implementations raise ``CacheUnavailable`` when the backend cannot be
    reached; they never raise driver exceptions.
    """

    async def set(self, token: str, user_id: int, ttl_seconds: int) -> None: ...

    async def get(self, token: str) -> Optional[int]: ...

    async def delete(self, token: str, *, revoked_ttl: Optional[int] = None) -> None: ...

    async def delete_all_for_user(self, user_id: int, *, mark_revoked: bool = False) -> int: ...

    async def is_revoked(self, token: str) -> bool: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class NullTokenCache:
    """Stands in when no cache is configured; every operation is a no-op."""

    async def set(self, token: str, user_id: int, ttl_seconds: int) -> None:
        return None

    async def get(self, token: str) -> Optional[int]:
        return None

    async def delete(self, token: str, *, revoked_ttl: Optional[int] = None) -> None:
        return None

    async def delete_all_for_user(self, user_id: int, *, mark_revoked: bool = False) -> int:
        return 0

    async def is_revoked(self, token: str) -> bool:
        return False

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MemoryTokenCache:
    """Process-local token cache with TTLs, used in tests and single-node dev.

    Like the Redis layout, the per-user index expires with the most recently
    added token. Expired entries are swept on writes at most once per
    ``sweep_interval`` seconds, and a user's own index is pruned on every
    insert for that user.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        *,
        sweep_interval: float = 60.0,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens: Dict[str, Tuple[int, float]] = {}
        # user id -> (token digests, index expiry)
        self._by_user: Dict[int, Tuple[Set[str], float]] = {}
        self._revoked: Dict[str, float] = {}
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def _live(self, digest: str, now: float) -> Optional[Tuple[int, float]]:
        entry = self._tokens.get(digest)
        if entry is None:
            return None
        if entry[1] <= now:
            self._tokens.pop(digest, None)
            return None
        return entry

    def _index(self, user_id: int, now: float) -> Set[str]:
        entry = self._by_user.get(user_id)
        if entry is None:
            return set()
        digests, expires = entry
        if expires <= now:
            self._by_user.pop(user_id, None)
            return set()
        return digests

    def _sweep(self, now: float) -> None:
        for digest in [d for d, (_, exp) in self._tokens.items() if exp <= now]:
            del self._tokens[digest]
        for digest in [d for d, exp in self._revoked.items() if exp <= now]:
            del self._revoked[digest]
        for user_id, (digests, expires) in list(self._by_user.items()):
            digests.intersection_update(self._tokens)
            if expires <= now or not digests:
                del self._by_user[user_id]
        self._next_sweep = now + self._sweep_interval

    async def set(self, token: str, user_id: int, ttl_seconds: int) -> None:
        digest = token_digest(token)
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)
            expires = now + max(1, int(ttl_seconds))
            self._tokens[digest] = (user_id, expires)
            digests = {d for d in self._index(user_id, now) if self._live(d, now)}
            digests.add(digest)
            # index TTL follows the newest token, as with Redis EXPIRE on insert
            self._by_user[user_id] = (digests, expires)

    async def get(self, token: str) -> Optional[int]:
        with self._lock:
            entry = self._live(token_digest(token), self._clock())
        return entry[0] if entry else None

    async def delete(self, token: str, *, revoked_ttl: Optional[int] = None) -> None:
        digest = token_digest(token)
        with self._lock:
            now = self._clock()
            entry = self._tokens.pop(digest, None)
            if entry is not None:
                self._index(entry[0], now).discard(digest)
            if revoked_ttl and revoked_ttl > 0:
                self._revoked[digest] = now + revoked_ttl

    async def delete_all_for_user(self, user_id: int, *, mark_revoked: bool = False) -> int:
        revoked = 0
        with self._lock:
            now = self._clock()
            digests = self._index(user_id, now)
            self._by_user.pop(user_id, None)
            for digest in digests:
                entry = self._live(digest, now)
                self._tokens.pop(digest, None)
                if entry is None:
                    continue
                if mark_revoked:
                    self._revoked[digest] = entry[1]
                revoked += 1
        return revoked

    async def is_revoked(self, token: str) -> bool:
        digest = token_digest(token)
        with self._lock:
            expires = self._revoked.get(digest)
            if expires is None:
                return False
            if expires <= self._clock():
                self._revoked.pop(digest, None)
                return False
            return True

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._tokens.clear()
            self._by_user.clear()
            self._revoked.clear()
