import os
import stat

import pytest

from authkit.config import Settings, TokenCacheBackend, get_settings, reset_settings_cache


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ("JWT_SECRET", "TOKEN_CACHE_BACKEND", "OAUTH_REDIRECT_URI"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("STATE_DIR", str(tmp_path))
    # keep a stray .env in the working directory out of the picture
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_defaults(clean_env):
    settings = Settings.from_env()
    assert settings.jwt_issuer == "authkit"
    assert settings.jwt_expiration_hours == 24
    assert settings.token_cache_backend == TokenCacheBackend.REDIS
    assert settings.token_revocation_denylist is True
    assert settings.database_connect_retries == 5


def test_environment_overrides(clean_env, monkeypatch):
    monkeypatch.setenv("TOKEN_CACHE_BACKEND", "none")
    monkeypatch.setenv("JWT_EXPIRATION_HOURS", "2")
    monkeypatch.setenv("OAUTH_REDIRECT_URI", "https://app.example.com/auth/callback/")
    settings = Settings.from_env()
    assert settings.token_cache_backend == TokenCacheBackend.NONE
    assert settings.jwt_expiration_hours == 2
    assert settings.oauth_redirect_uri == "https://app.example.com/auth/callback"


def test_dotenv_file_is_read(clean_env):
    (clean_env / ".env").write_text("JWT_ISSUER=from-dotenv\n")
    assert Settings.from_env().jwt_issuer == "from-dotenv"


def test_process_environment_wins_over_dotenv(clean_env, monkeypatch):
    (clean_env / ".env").write_text("JWT_ISSUER=from-dotenv\n")
    monkeypatch.setenv("JWT_ISSUER", "from-env")
    assert Settings.from_env().jwt_issuer == "from-env"


def test_missing_secret_is_generated_and_persisted(clean_env):
    first = Settings.from_env().jwt_secret
    second = Settings.from_env().jwt_secret
    assert len(first) >= 32
    assert first == second
    secret_file = clean_env / ".jwt_secret"
    assert secret_file.read_text() == first
    assert stat.S_IMODE(os.stat(secret_file).st_mode) == 0o600


def test_explicit_secret_is_used(clean_env, monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "explicit-secret-value")
    assert Settings.from_env().jwt_secret == "explicit-secret-value"
    assert not (clean_env / ".jwt_secret").exists()


def test_settings_are_cached_until_reset(monkeypatch):
    first = get_settings()
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings() is not first
