"""End-to-end service flows over the in-memory store and token cache."""

import pytest

from authkit.service.auth import AuthService, normalize_email
from authkit.service.errors import (
    AlreadyExistsError,
    InvalidCredentialsError,
    NotFoundError,
    OAuthExchangeError,
    TokenRevokedError,
    UnavailableError,
    ValidationError,
)
from authkit.service.oauth import OAuthBridge, OAuthIdentity, OAuthProvider
from authkit.service.passwords import CredentialVerifier
from authkit.service.tokens import TokenAuthority
from authkit.storage.errors import StorageUnavailable
from authkit.storage.memory import MemoryStore
from authkit.storage.token_cache import MemoryTokenCache


class StubProvider(OAuthProvider):
    """Returns a canned identity for any code."""

    name = "github"
    auth_url = "https://github.example/authorize"

    def __init__(self, identity: OAuthIdentity):
        super().__init__("cid", "csecret", "http://localhost/auth/callback/github")
        self.identity = identity

    async def exchange_code(self, code: str) -> OAuthIdentity:
        return self.identity


class DownStore(MemoryStore):
    def get_user_by_email(self, email):
        raise StorageUnavailable("connection refused")


def _identity(**overrides):
    values = dict(
        provider="github",
        provider_id="77",
        email="octo@example.com",
        name="Octo",
        avatar_url="https://img.example.com/o.png",
    )
    values.update(overrides)
    return OAuthIdentity(**values)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tokens():
    return TokenAuthority("service-test-secret-abcdefghijklmnop", cache=MemoryTokenCache())


@pytest.fixture
def service(store, tokens):
    verifier = CredentialVerifier(time_cost=1, memory_cost=1024, parallelism=1)
    return AuthService(store, tokens, verifier=verifier)


def _with_provider(service, identity):
    service.oauth = OAuthBridge({"github": StubProvider(identity)})
    return service


def test_normalize_email():
    assert normalize_email("  Alice@Example.COM ") == "alice@example.com"
    assert normalize_email(None) == ""


class TestRegisterAndLogin:
    async def test_register_issues_token_and_hashes_password(self, service, store):
        result = await service.register("New@Example.com", "correct horse", "New User")
        assert result.user.email == "new@example.com"
        assert result.user.external_id.startswith("usr-")
        stored = store.get_user(result.user.id)
        assert stored.password_hash.startswith("$argon2id$")
        claims = await service.tokens.validate_token(result.token)
        assert claims.user_id == result.user.id

    async def test_duplicate_email_conflicts(self, service):
        await service.register("dup@example.com", "password-1", "A")
        with pytest.raises(AlreadyExistsError):
            await service.register("DUP@example.com", "password-2", "B")

    async def test_empty_fields_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.register("", "password", "A")
        with pytest.raises(ValidationError):
            await service.register("a@example.com", "", "A")

    async def test_login_round_trip(self, service):
        await service.register("login@example.com", "s3cret-pass", "L")
        result = await service.login("Login@Example.com", "s3cret-pass")
        assert result.user.email == "login@example.com"

    async def test_wrong_password_and_unknown_user_look_identical(self, service):
        await service.register("known@example.com", "s3cret-pass", "K")
        with pytest.raises(InvalidCredentialsError) as wrong:
            await service.login("known@example.com", "nope-nope")
        with pytest.raises(InvalidCredentialsError) as unknown:
            await service.login("ghost@example.com", "nope-nope")
        assert str(wrong.value) == str(unknown.value)
        assert wrong.value.message_id == unknown.value.message_id

    async def test_oauth_only_account_cannot_password_login(self, service):
        _with_provider(service, _identity())
        await service.oauth_login("github", "code")
        with pytest.raises(InvalidCredentialsError):
            await service.login("octo@example.com", "")

    async def test_storage_outage_is_unavailable(self, tokens):
        service = AuthService(DownStore(), tokens)
        with pytest.raises(UnavailableError):
            await service.login("a@example.com", "password")


class TestOAuthLogin:
    async def test_first_login_creates_user(self, service, store):
        _with_provider(service, _identity())
        result = await service.oauth_login("github", "code")
        assert result.user.provider == "github"
        assert result.user.provider_id == "77"
        assert result.user.password_hash is None
        assert store.get_user_by_provider("github", "77").id == result.user.id

    async def test_repeat_login_reuses_user_and_refreshes_profile(self, service):
        _with_provider(service, _identity())
        first = await service.oauth_login("github", "code")
        _with_provider(service, _identity(name="Octo Cat"))
        second = await service.oauth_login("github", "code")
        assert second.user.id == first.user.id
        assert second.user.name == "Octo Cat"
        assert second.user.avatar_url == "https://img.example.com/o.png"

    async def test_avatar_removed_at_provider_is_cleared(self, service, store):
        _with_provider(service, _identity())
        first = await service.oauth_login("github", "code")
        _with_provider(service, _identity(avatar_url=None))
        second = await service.oauth_login("github", "code")
        assert second.user.avatar_url is None
        assert store.get_user(first.user.id).avatar_url is None

    async def test_unchanged_profile_skips_update(self, service, store, monkeypatch):
        _with_provider(service, _identity())
        await service.oauth_login("github", "code")
        calls = []
        monkeypatch.setattr(store, "update_user", lambda user: calls.append(user))
        await service.oauth_login("github", "code")
        assert calls == []

    async def test_email_collision_with_password_account_conflicts(self, service):
        await service.register("octo@example.com", "password-1", "Pw")
        _with_provider(service, _identity())
        with pytest.raises(AlreadyExistsError):
            await service.oauth_login("github", "code")

    async def test_new_user_without_email_is_rejected(self, service):
        _with_provider(service, _identity(email=""))
        with pytest.raises(OAuthExchangeError) as excinfo:
            await service.oauth_login("github", "code")
        assert excinfo.value.message_id == "error.oauth_email_missing"

    async def test_linked_user_without_email_still_logs_in(self, service):
        _with_provider(service, _identity())
        first = await service.oauth_login("github", "code")
        _with_provider(service, _identity(email=""))
        second = await service.oauth_login("github", "code")
        assert second.user.id == first.user.id

    def test_authorization_url_returns_fresh_state(self, service):
        _with_provider(service, _identity())
        url, state = service.authorization_url("github")
        _, other_state = service.authorization_url("github")
        assert f"state={state}" in url
        assert state != other_state
        assert len(state) >= 32

    def test_unconfigured_provider(self, service):
        with pytest.raises(ValidationError):
            service.authorization_url("google")


class TestProfileAndLogout:
    async def test_profile_of_deleted_user_is_not_found(self, service, store):
        result = await service.register("p@example.com", "password-1", "P")
        claims = await service.tokens.validate_token(result.token)
        assert service.get_profile(claims).email == "p@example.com"
        store.delete_user(result.user.id)
        with pytest.raises(NotFoundError):
            service.get_profile(claims)

    async def test_logout_revokes_only_that_token(self, service):
        await service.register("lo@example.com", "password-1", "L")
        first = await service.login("lo@example.com", "password-1")
        second = await service.login("lo@example.com", "password-1")
        await service.logout(first.token)
        with pytest.raises(TokenRevokedError):
            await service.tokens.validate_token(first.token)
        await service.tokens.validate_token(second.token)

    async def test_logout_all_revokes_every_session(self, service):
        registered = await service.register("all@example.com", "password-1", "A")
        other = await service.login("all@example.com", "password-1")
        claims = await service.tokens.validate_token(other.token)
        assert await service.logout_all(claims) == 2
        for token in (registered.token, other.token):
            with pytest.raises(TokenRevokedError):
                await service.tokens.validate_token(token)
