from __future__ import annotations

import secrets
import unicodedata
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional, Protocol, Tuple, TypeVar

from authkit import ids
from authkit.logging import get_logger
from authkit.service.errors import (
    AlreadyExistsError,
    InvalidCredentialsError,
    NotFoundError,
    OAuthExchangeError,
    UnavailableError,
    ValidationError,
)
from authkit.service.oauth import OAuthBridge, OAuthIdentity
from authkit.service.passwords import CredentialVerifier
from authkit.service.tokens import Claims, TokenAuthority
from authkit.storage.errors import ConstraintViolation, StorageUnavailable
from authkit.storage.models import User

logger = get_logger(__name__)

T = TypeVar("T")


class UserStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_external_id(self, external_id: str) -> Optional[User]: ...

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]: ...

    def update_user(self, user: User) -> Optional[User]: ...

    def delete_user(self, user_id: int) -> bool: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class AuthResult:
    user: User
    token: str
    expires_at: datetime


def normalize_email(email: str) -> str:
    return unicodedata.normalize("NFKC", email or "").strip().lower()


class AuthService:
    """Registration, password login and OAuth login flows.

    Every successful flow ends with a freshly issued token. Storage transport
    failures surface as ``UnavailableError``; uniqueness races surface as
    ``AlreadyExistsError``.
    """

    def __init__(
        self,
        store: UserStore,
        tokens: TokenAuthority,
        *,
        verifier: Optional[CredentialVerifier] = None,
        oauth: Optional[OAuthBridge] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.verifier = verifier or CredentialVerifier()
        self.oauth = oauth or OAuthBridge()
        self.logger = logger

    def _storage(self, call: Callable[..., T], *args) -> T:
        try:
            return call(*args)
        except StorageUnavailable as exc:
            raise UnavailableError("identity store unavailable") from exc

    def _result(self, user: User, token: str) -> AuthResult:
        return AuthResult(
            user=user, token=token, expires_at=self.tokens.decode(token).expires_at
        )

    async def register(self, email: str, password: str, name: str) -> AuthResult:
        email = normalize_email(email)
        if not email or not password:
            raise ValidationError("email and password are required")
        if self._storage(self.store.get_user_by_email, email):
            raise AlreadyExistsError("user already exists")

        candidate = User(
            external_id=ids.new_user_id(),
            email=email,
            name=(name or "").strip(),
            password_hash=self.verifier.hash_password(password),
        )
        try:
            user = self._storage(self.store.create_user, candidate)
        except ConstraintViolation as exc:
            # lost a race with a concurrent registration for the same email
            raise AlreadyExistsError("user already exists", detail=exc.detail) from exc

        token = await self.tokens.issue_token(user.id, user.email)
        self.logger.info("user_registered", user_id=user.id)
        return self._result(user, token)

    async def login(self, email: str, password: str) -> AuthResult:
        user = self._storage(self.store.get_user_by_email, normalize_email(email))
        if user is None:
            self.verifier.burn_verification(password or "")
            self.logger.info("login_failed", reason="credentials")
            raise InvalidCredentialsError("invalid credentials")
        if not self.verifier.verify_password(user.password_hash, password or ""):
            self.logger.info("login_failed", reason="credentials", user_id=user.id)
            raise InvalidCredentialsError("invalid credentials")

        token = await self.tokens.issue_token(user.id, user.email)
        self.logger.info("login_succeeded", user_id=user.id)
        return self._result(user, token)

    def authorization_url(self, provider: str) -> Tuple[str, str]:
        """Return ``(url, state)``; the caller must bind state to the browser."""
        oauth_provider = self.oauth.get(provider)
        state = secrets.token_urlsafe(32)
        return oauth_provider.authorization_url(state), state

    async def oauth_login(self, provider: str, code: str) -> AuthResult:
        identity = await self.oauth.get(provider).exchange_code(code)
        existing = self._storage(
            self.store.get_user_by_provider, identity.provider, identity.provider_id
        )
        if existing is None:
            user = self._create_oauth_user(identity)
        else:
            user = self._reconcile_profile(existing, identity)

        token = await self.tokens.issue_token(user.id, user.email)
        self.logger.info("oauth_login_succeeded", provider=identity.provider, user_id=user.id)
        return self._result(user, token)

    def _create_oauth_user(self, identity: OAuthIdentity) -> User:
        email = normalize_email(identity.email)
        if not email:
            self.logger.warning("oauth_identity_missing_email", provider=identity.provider)
            raise OAuthExchangeError(
                f"{identity.provider} did not share an email address",
                provider=identity.provider,
                message_id="error.oauth_email_missing",
            )
        candidate = User(
            external_id=ids.new_user_id(),
            email=email,
            name=identity.name,
            avatar_url=identity.avatar_url,
            provider=identity.provider,
            provider_id=identity.provider_id,
        )
        try:
            user = self._storage(self.store.create_user, candidate)
        except ConstraintViolation as exc:
            # email already belongs to another account; accounts are not merged
            self.logger.info(
                "oauth_account_conflict",
                provider=identity.provider,
                field=exc.detail.get("field"),
            )
            raise AlreadyExistsError("user already exists", detail=exc.detail) from exc
        self.logger.info("oauth_user_created", provider=identity.provider, user_id=user.id)
        return user

    def _reconcile_profile(self, user: User, identity: OAuthIdentity) -> User:
        # the provider profile is authoritative, including a removed avatar
        name = identity.name
        avatar_url = identity.avatar_url
        if name == user.name and avatar_url == user.avatar_url:
            return user
        updated = replace(user, name=name, avatar_url=avatar_url)
        try:
            stored = self.store.update_user(updated)
        except (StorageUnavailable, ConstraintViolation) as exc:
            self.logger.warning(
                "oauth_profile_update_failed", user_id=user.id, error=str(exc)
            )
            return user
        return stored or user

    def get_profile(self, claims: Claims) -> User:
        user = self._storage(self.store.get_user, claims.user_id)
        if user is None:
            raise NotFoundError("user not found", message_id="error.user_not_found")
        return user

    async def logout(self, token: str) -> None:
        await self.tokens.revoke_token(token)

    async def logout_all(self, claims: Claims) -> int:
        return await self.tokens.revoke_all_user_tokens(claims.user_id)
