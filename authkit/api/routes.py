from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from authkit.api.error_handling import request_translator
from authkit.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutResponse,
    OAuthURLResponse,
    RegisterRequest,
    UserResponse,
)
from authkit.logging import get_logger
from authkit.service.auth import AuthResult
from authkit.service.errors import AuthenticationError, ValidationError
from authkit.service.i18n import Translator
from authkit.service.runtime import get_runtime
from authkit.service.tokens import Claims

logger = get_logger(__name__)

router = APIRouter()

AUTH_HEADER = "X-Auth-Token"
OAUTH_STATE_COOKIE = "authkit_oauth_state"
OAUTH_STATE_TTL_SECONDS = 600


@dataclass(frozen=True)
class AuthContext:
    claims: Claims
    token: str


async def get_auth_context(
    x_auth_token: Optional[str] = Header(None, alias=AUTH_HEADER),
) -> AuthContext:
    token = (x_auth_token or "").strip()
    if not token:
        raise AuthenticationError(
            f"{AUTH_HEADER} header required", message_id="error.auth_header_missing"
        )
    claims = await get_runtime().tokens.validate_token(token)
    return AuthContext(claims=claims, token=token)


def get_translator(request: Request) -> Translator:
    return request_translator(request)


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            token=result.token,
            expires_at=result.expires_at,
            user=UserResponse.from_user(result.user),
        ),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an email/password account and return a token for it.

    Raises:
        409: If the email is already registered
    """
    result = await get_runtime().auth.register(body.email, body.password, body.name)
    return _auth_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Unknown email and wrong password produce the same 401.
    """
    result = await get_runtime().auth.login(body.email, body.password)
    return _auth_envelope(result)


@router.get("/auth/oauth/{provider}", response_model=Envelope, tags=["auth"])
async def oauth_start(provider: str, response: Response):
    """Return the provider authorization URL.

    The anti-CSRF state is returned and also bound to the browser through an
    http-only cookie that the callback checks.
    """
    runtime = get_runtime()
    url, state = runtime.auth.authorization_url(provider)
    response.set_cookie(
        OAUTH_STATE_COOKIE,
        state,
        max_age=OAUTH_STATE_TTL_SECONDS,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        path="/auth/callback",
    )
    return Envelope(
        status="ok",
        data=OAuthURLResponse(
            provider=provider.lower(), authorization_url=url, state=state
        ),
    )


@router.get("/auth/callback/{provider}", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    provider: str,
    request: Request,
    response: Response,
    code: str = Query(..., min_length=1, max_length=2048),
    state: str = Query(..., min_length=1, max_length=256),
):
    """Exchange the authorization code and log the matching user in.

    Raises:
        400: If state does not match the cookie set by the start endpoint
        502: If the provider rejects the code
        503: If the provider cannot be reached
    """
    expected_state = request.cookies.get(OAUTH_STATE_COOKIE)
    if not expected_state or not hmac.compare_digest(expected_state, state):
        logger.warning("oauth_state_mismatch", provider=provider)
        raise ValidationError(
            "oauth state mismatch", message_id="error.oauth_state_mismatch"
        )
    response.delete_cookie(OAUTH_STATE_COOKIE, path="/auth/callback")
    result = await get_runtime().auth.oauth_login(provider, code)
    return _auth_envelope(result)


@router.get("/api/profile", response_model=Envelope, tags=["users"])
async def profile(ctx: AuthContext = Depends(get_auth_context)):
    user = get_runtime().auth.get_profile(ctx.claims)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    ctx: AuthContext = Depends(get_auth_context),
    translator: Translator = Depends(get_translator),
):
    """Revoke the presented token."""
    await get_runtime().auth.logout(ctx.token)
    return Envelope(
        status="ok", data=LogoutResponse(message=translator.t("auth.logged_out"))
    )


@router.post("/auth/logout/all", response_model=Envelope, tags=["auth"])
async def logout_all(
    ctx: AuthContext = Depends(get_auth_context),
    translator: Translator = Depends(get_translator),
):
    """Revoke every cached token of the caller, including the presented one."""
    revoked = await get_runtime().auth.logout_all(ctx.claims)
    return Envelope(
        status="ok",
        data=LogoutResponse(message=translator.t("auth.logged_out"), revoked=revoked),
    )
