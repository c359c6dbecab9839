from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from authkit import ids
from authkit.logging import get_logger
from authkit.service.errors import (
    InvalidSignatureError,
    InvalidTokenError,
    TokenExpiredError,
    TokenRevokedError,
    TokenUserMismatchError,
    UnavailableError,
)
from authkit.storage.errors import CacheUnavailable
from authkit.storage.token_cache import NullTokenCache, TokenCache

logger = get_logger(__name__)

ALGORITHM = "HS256"
DEFAULT_EXPIRATION = timedelta(hours=24)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Claims:
    user_id: int
    email: str
    issued_at: datetime
    expires_at: datetime
    token_id: str
    issuer: str

    def remaining_seconds(self, now: datetime) -> int:
        return int((self.expires_at - now).total_seconds())


class TokenAuthority:
    """Issues, validates and revokes HS256 bearer tokens.

    Revocation state lives in the token cache. With the cache missing or
    unreachable, validation falls back to signature and expiry checks only,
    so a revoked token can remain usable until it expires.
    """

    def __init__(
        self,
        secret: str,
        *,
        expiration: timedelta = DEFAULT_EXPIRATION,
        issuer: str = "authkit",
        cache: Optional[TokenCache] = None,
        clock: Callable[[], datetime] = utcnow,
        denylist: bool = True,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.expiration = expiration
        self.issuer = issuer
        self.cache: TokenCache = cache if cache is not None else NullTokenCache()
        self._clock = clock
        self.denylist = denylist

    # encoding
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Claims:
        """Verify structure, algorithm and MAC; expiry is checked by the caller."""
        if not isinstance(token, str):
            raise InvalidTokenError("token is malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("token is malformed")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("token is malformed")
        # only the algorithm we sign with is accepted; rejects "none" and RS/HS confusion
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidSignatureError("unexpected signing algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidSignatureError("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("token is malformed")
        return self._claims_from_payload(payload)

    def _claims_from_payload(self, payload: Any) -> Claims:
        if not isinstance(payload, dict):
            raise InvalidTokenError("token payload is malformed")
        user_id = payload.get("user_id")
        # bool is an int subclass and never a valid user key
        if not isinstance(user_id, int) or isinstance(user_id, bool):
            raise InvalidTokenError("token user id is malformed")
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("token issuer mismatch")
        try:
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            raise InvalidTokenError("token timestamps are malformed")
        token_id = payload.get("jti")
        if not ids.validate(token_id, ids.PREFIX_TOKEN):
            raise InvalidTokenError("token id is malformed")
        return Claims(
            user_id=user_id,
            email=str(payload.get("email") or ""),
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=token_id,
            issuer=self.issuer,
        )

    def decode(self, token: str) -> Claims:
        """Verify signature and shape only; expiry and revocation are not checked."""
        return self._decode_jwt(token)

    # operations
    async def issue_token(self, user_id: int, email: str) -> str:
        now = self._clock()
        expires_at = now + self.expiration
        token = self._encode_jwt(
            {
                "user_id": int(user_id),
                "email": email,
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
                "jti": ids.generate(ids.PREFIX_TOKEN),
                "iss": self.issuer,
            }
        )
        try:
            await self.cache.set(token, int(user_id), int(self.expiration.total_seconds()))
        except CacheUnavailable as exc:
            logger.warning("token_cache_write_failed", user_id=user_id, error=str(exc))
        return token

    async def validate_token(self, token: str) -> Claims:
        try:
            cached_user = await self.cache.get(token)
        except CacheUnavailable as exc:
            logger.warning("token_cache_read_failed", error=str(exc))
            cached_user = None
            cache_healthy = False
        else:
            cache_healthy = True

        claims = self._decode_jwt(token)
        now = self._clock()
        if claims.expires_at <= now:
            raise TokenExpiredError("token has expired")

        if cached_user is not None:
            if cached_user != claims.user_id:
                logger.warning(
                    "token_user_mismatch", claims_user=claims.user_id, cached_user=cached_user
                )
                raise TokenUserMismatchError("token user mismatch")
            # a revoke racing a cache-miss refill can leave a forward entry behind
            await self._check_revoked(token)
            return claims

        if not cache_healthy:
            return claims

        await self._check_revoked(token)

        try:
            await self.cache.set(token, claims.user_id, max(1, claims.remaining_seconds(now)))
        except CacheUnavailable as exc:
            logger.warning("token_cache_write_failed", user_id=claims.user_id, error=str(exc))
        return claims

    async def _check_revoked(self, token: str) -> None:
        if not self.denylist:
            return
        try:
            revoked = await self.cache.is_revoked(token)
        except CacheUnavailable as exc:
            logger.warning("token_revocation_check_failed", error=str(exc))
            return
        if revoked:
            raise TokenRevokedError("token has been revoked")

    async def revoke_token(self, token: str) -> None:
        revoked_ttl: Optional[int] = None
        if self.denylist:
            try:
                claims = self._decode_jwt(token)
            except InvalidTokenError:
                claims = None
            if claims is not None:
                remaining = claims.remaining_seconds(self._clock())
                revoked_ttl = remaining if remaining > 0 else None
        try:
            await self.cache.delete(token, revoked_ttl=revoked_ttl)
        except CacheUnavailable as exc:
            raise UnavailableError("token cache unavailable") from exc
        logger.info("token_revoked", denylisted=revoked_ttl is not None)

    async def revoke_all_user_tokens(self, user_id: int) -> int:
        try:
            count = await self.cache.delete_all_for_user(
                int(user_id), mark_revoked=self.denylist
            )
        except CacheUnavailable as exc:
            raise UnavailableError("token cache unavailable") from exc
        logger.info("user_tokens_revoked", user_id=user_id, count=count)
        return count
