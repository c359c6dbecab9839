from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from authkit.logging import get_logger
from authkit.service.errors import OAuthExchangeError, UnavailableError, ValidationError

logger = get_logger(__name__)


@dataclass(frozen=True)
class OAuthIdentity:
    """Provider profile normalized for account reconciliation.

    ``email`` may be empty when the provider withholds it.
    """

    provider: str
    provider_id: str
    email: str
    name: str
    avatar_url: Optional[str] = None


class OAuthProvider:
    """Authorization-code exchange for one provider."""

    name: str = ""
    auth_url: str = ""
    token_url: str = ""
    userinfo_url: str = ""
    scope: str = ""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    def _extra_auth_params(self) -> Dict[str, str]:
        return {}

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
        }
        params.update(self._extra_auth_params())
        return f"{self.auth_url}?{urlencode(params)}"

    def _userinfo_headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    def _parse_userinfo(self, userinfo: Dict[str, Any]) -> OAuthIdentity:
        raise NotImplementedError

    async def _complete_identity(
        self, client: httpx.AsyncClient, identity: OAuthIdentity, access_token: str
    ) -> OAuthIdentity:
        return identity

    def _json(self, response: httpx.Response, what: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            logger.error(f"oauth_{what}_parse_error", provider=self.name, error=str(exc))
            raise OAuthExchangeError(
                f"{self.name} returned an unreadable {what} response", provider=self.name
            ) from exc

    async def exchange_code(self, code: str) -> OAuthIdentity:
        if not code:
            raise ValidationError("authorization code is required")
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    self.token_url,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = self._json(token_response, "token")
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=self.name)
                    raise OAuthExchangeError(
                        f"{self.name} did not return an access token", provider=self.name
                    )

                userinfo_response = await client.get(
                    self.userinfo_url, headers=self._userinfo_headers(access_token)
                )
                userinfo_response.raise_for_status()
                userinfo = self._json(userinfo_response, "userinfo")
                if not isinstance(userinfo, dict):
                    raise OAuthExchangeError(
                        f"{self.name} returned an invalid profile", provider=self.name
                    )
                identity = self._parse_userinfo(userinfo)
                if not identity.provider_id:
                    logger.error("oauth_identity_missing_uid", provider=self.name)
                    raise OAuthExchangeError(
                        f"{self.name} profile has no id", provider=self.name
                    )
                identity = await self._complete_identity(client, identity, access_token)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            raise OAuthExchangeError(
                f"{self.name} rejected the authorization code", provider=self.name
            ) from exc
        except httpx.TimeoutException as exc:
            logger.warning("oauth_exchange_timeout", provider=self.name)
            raise UnavailableError(f"{self.name} did not respond in time") from exc
        except httpx.TransportError as exc:
            logger.warning("oauth_exchange_unreachable", provider=self.name, error=str(exc))
            raise UnavailableError(f"{self.name} is unreachable") from exc

        logger.info(
            "oauth_exchange_success", provider=self.name, provider_id=identity.provider_id
        )
        return identity


class GoogleProvider(OAuthProvider):
    name = "google"
    auth_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://www.googleapis.com/oauth2/v2/userinfo"
    scope = "openid email profile"

    def _extra_auth_params(self) -> Dict[str, str]:
        return {"access_type": "offline"}

    def _parse_userinfo(self, userinfo: Dict[str, Any]) -> OAuthIdentity:
        return OAuthIdentity(
            provider=self.name,
            provider_id=str(userinfo.get("id") or ""),
            email=str(userinfo.get("email") or ""),
            name=str(userinfo.get("name") or ""),
            avatar_url=userinfo.get("picture") or None,
        )


class GitHubProvider(OAuthProvider):
    name = "github"
    auth_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"
    userinfo_url = "https://api.github.com/user"
    emails_url = "https://api.github.com/user/emails"
    scope = "user:email"

    def _userinfo_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
        }

    def _parse_userinfo(self, userinfo: Dict[str, Any]) -> OAuthIdentity:
        raw_id = userinfo.get("id")
        return OAuthIdentity(
            provider=self.name,
            provider_id=str(raw_id) if raw_id is not None else "",
            email=str(userinfo.get("email") or ""),
            # GitHub users without a display name fall back to their login
            name=str(userinfo.get("name") or userinfo.get("login") or ""),
            avatar_url=userinfo.get("avatar_url") or None,
        )

    async def _complete_identity(
        self, client: httpx.AsyncClient, identity: OAuthIdentity, access_token: str
    ) -> OAuthIdentity:
        if identity.email:
            return identity
        response = await client.get(self.emails_url, headers=self._userinfo_headers(access_token))
        if response.status_code != 200:
            logger.warning(
                "oauth_github_emails_unavailable", status_code=response.status_code
            )
            return identity
        emails = self._json(response, "emails")
        if not isinstance(emails, list):
            return identity
        primary = next(
            (
                entry.get("email")
                for entry in emails
                if isinstance(entry, dict) and entry.get("primary") and entry.get("email")
            ),
            None,
        )
        if not primary:
            return identity
        return OAuthIdentity(
            provider=identity.provider,
            provider_id=identity.provider_id,
            email=primary,
            name=identity.name,
            avatar_url=identity.avatar_url,
        )


PROVIDER_CLASSES = {
    GoogleProvider.name: GoogleProvider,
    GitHubProvider.name: GitHubProvider,
}


class OAuthBridge:
    """Registry of configured providers keyed by name."""

    def __init__(self, providers: Optional[Dict[str, OAuthProvider]] = None) -> None:
        self._providers: Dict[str, OAuthProvider] = dict(providers or {})

    @classmethod
    def from_settings(
        cls, settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "OAuthBridge":
        credentials = {
            "google": (settings.oauth_google_client_id, settings.oauth_google_client_secret),
            "github": (settings.oauth_github_client_id, settings.oauth_github_client_secret),
        }
        providers: Dict[str, OAuthProvider] = {}
        for name, (client_id, client_secret) in credentials.items():
            if not client_id or not client_secret:
                continue
            providers[name] = PROVIDER_CLASSES[name](
                client_id,
                client_secret,
                f"{settings.oauth_redirect_uri}/{name}",
                timeout=settings.oauth_timeout_seconds,
                transport=transport,
            )
        return cls(providers)

    def register(self, provider: OAuthProvider) -> None:
        self._providers[provider.name] = provider

    @property
    def configured(self) -> list[str]:
        return sorted(self._providers)

    def get(self, provider: str) -> OAuthProvider:
        name = (provider or "").lower()
        if name not in PROVIDER_CLASSES:
            raise ValidationError(
                f"unsupported provider: {provider}",
                message_id="error.unsupported_provider",
                detail={"provider": provider},
            )
        if name not in self._providers:
            logger.warning("oauth_not_configured", provider=name)
            raise ValidationError(
                f"provider {name} is not configured",
                message_id="error.provider_not_configured",
                detail={"provider": name},
            )
        return self._providers[name]
