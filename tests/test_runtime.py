import pytest

from authkit.config import reset_settings_cache
from authkit.service.runtime import Runtime, _mask_url_password, get_runtime
from authkit.storage.memory import MemoryStore
from authkit.storage.token_cache import MemoryTokenCache, NullTokenCache


@pytest.fixture
def fresh_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


def test_runtime_is_a_singleton():
    assert get_runtime() is get_runtime()


def test_test_runtime_uses_memory_backends():
    runtime = get_runtime()
    assert isinstance(runtime.store, MemoryStore)
    assert isinstance(runtime.cache, MemoryTokenCache)
    assert runtime.tokens.cache is runtime.cache
    assert runtime.auth.oauth is runtime.oauth


def test_cache_can_be_disabled(monkeypatch, fresh_settings):
    monkeypatch.setenv("TOKEN_CACHE_BACKEND", "none")
    assert isinstance(Runtime().cache, NullTokenCache)


def test_unreachable_redis_falls_back_in_test_mode(monkeypatch, fresh_settings):
    monkeypatch.setenv("TOKEN_CACHE_BACKEND", "redis")
    monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
    monkeypatch.setenv("CACHE_OPERATION_TIMEOUT_SECONDS", "0.5")
    assert isinstance(Runtime().cache, MemoryTokenCache)


def test_unreachable_redis_is_fatal_outside_dev(monkeypatch, fresh_settings):
    monkeypatch.setenv("TOKEN_CACHE_BACKEND", "redis")
    monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
    monkeypatch.setenv("CACHE_OPERATION_TIMEOUT_SECONDS", "0.5")
    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
    with pytest.raises(RuntimeError):
        Runtime()


def test_oauth_providers_follow_credentials(monkeypatch, fresh_settings):
    monkeypatch.setenv("OAUTH_GITHUB_CLIENT_ID", "id")
    monkeypatch.setenv("OAUTH_GITHUB_CLIENT_SECRET", "secret")
    runtime = Runtime()
    assert runtime.oauth.configured == ["github"]


def test_mask_url_password():
    assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
    assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
    assert _mask_url_password(None) is None
