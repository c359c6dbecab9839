"""Tests for the in-process and null token caches."""

import pytest

from authkit.storage.token_cache import (
    MemoryTokenCache,
    NullTokenCache,
    forward_key,
    revoked_key,
    token_digest,
    user_index_key,
)


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def cache(clock):
    return MemoryTokenCache(clock=clock)


class TestKeys:
    def test_digest_is_sha256_hex(self):
        digest = token_digest("abc")
        assert len(digest) == 64
        assert digest != "abc"

    def test_key_layout(self):
        assert forward_key("d") == "auth:token:d"
        assert user_index_key(7) == "auth:user:7:tokens"
        assert revoked_key("d") == "auth:token:revoked:d"


class TestMemoryTokenCache:
    async def test_set_then_get(self, cache):
        await cache.set("tok", 1, 60)
        assert await cache.get("tok") == 1

    async def test_entry_expires(self, cache, clock):
        await cache.set("tok", 1, 60)
        clock.now += 61
        assert await cache.get("tok") is None

    async def test_delete_removes_entry_and_marks_revoked(self, cache, clock):
        await cache.set("tok", 1, 60)
        await cache.delete("tok", revoked_ttl=60)
        assert await cache.get("tok") is None
        assert await cache.is_revoked("tok")
        clock.now += 61
        assert not await cache.is_revoked("tok")

    async def test_delete_without_marker(self, cache):
        await cache.set("tok", 1, 60)
        await cache.delete("tok")
        assert not await cache.is_revoked("tok")

    async def test_delete_all_for_user(self, cache):
        await cache.set("a1", 1, 60)
        await cache.set("a2", 1, 60)
        await cache.set("b1", 2, 60)
        assert await cache.delete_all_for_user(1, mark_revoked=True) == 2
        assert await cache.get("a1") is None
        assert await cache.get("a2") is None
        assert await cache.get("b1") == 2
        assert await cache.is_revoked("a1")
        assert not await cache.is_revoked("b1")

    async def test_delete_all_skips_expired_entries(self, cache, clock):
        await cache.set("old", 1, 10)
        await cache.set("new", 1, 100)
        clock.now += 20
        assert await cache.delete_all_for_user(1) == 1

    async def test_close_clears_everything(self, cache):
        await cache.set("tok", 1, 60)
        await cache.close()
        assert await cache.get("tok") is None


class TestNullTokenCache:
    async def test_everything_is_a_noop(self):
        cache = NullTokenCache()
        await cache.set("tok", 1, 60)
        assert await cache.get("tok") is None
        await cache.delete("tok", revoked_ttl=60)
        assert await cache.delete_all_for_user(1, mark_revoked=True) == 0
        assert await cache.is_revoked("tok") is False
        assert await cache.ping() is True


class TestMemoryTokenCacheGrowth:
    async def test_expired_entries_do_not_accumulate(self, clock):
        cache = MemoryTokenCache(clock=clock, sweep_interval=60)
        for n in range(1000):
            await cache.set(f"tok-{n}", n, 10)
            await cache.delete(f"rev-{n}", revoked_ttl=10)
            clock.now += 20
        assert len(cache._tokens) <= 4
        assert len(cache._by_user) <= 4
        assert len(cache._revoked) <= 4

    async def test_user_index_drops_dead_digests_on_insert(self, clock):
        cache = MemoryTokenCache(clock=clock)
        for n in range(50):
            await cache.set(f"tok-{n}", 1, 10)
            clock.now += 20
        digests, _ = cache._by_user[1]
        assert len(digests) == 1

    async def test_user_index_expires_with_newest_token(self, clock):
        cache = MemoryTokenCache(clock=clock, sweep_interval=10_000)
        await cache.set("long", 1, 600)
        await cache.set("short", 1, 30)
        clock.now += 31
        # the index followed the short TTL, so the long token is no longer indexed
        assert await cache.delete_all_for_user(1) == 0
        assert await cache.get("long") == 1
