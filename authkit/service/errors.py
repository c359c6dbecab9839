from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP status_code, a stable error_code and a
    message_id used to look up a localized message:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - bad_gateway (502)
    - unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    message_id: str = "error.validation"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if message_id is not None:
            self.message_id = message_id
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    message_id = "error.validation"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    message_id = "error.unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are never distinguished."""
    message_id = "error.invalid_credentials"


class InvalidTokenError(AuthenticationError):
    """Token is malformed or cannot be decoded."""
    message_id = "error.invalid_token"


class InvalidSignatureError(InvalidTokenError):
    """Token MAC does not verify or the algorithm is not the one we sign with."""


class TokenExpiredError(AuthenticationError):
    """Token expiry is in the past."""
    message_id = "error.token_expired"


class TokenUserMismatchError(AuthenticationError):
    """Cached owner of a token differs from the user named in its claims."""
    message_id = "error.invalid_token"


class TokenRevokedError(AuthenticationError):
    """Token was explicitly revoked before its expiry."""
    message_id = "error.token_revoked"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    message_id = "error.not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    message_id = "error.conflict"


class AlreadyExistsError(ConflictError):
    """A user with the same email or provider identity already exists."""
    message_id = "error.user_exists"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    message_id = "error.server"


class PasswordHashingError(ServerError):
    """The password hasher failed; registration cannot proceed."""


class OAuthExchangeError(ServiceError):
    """Provider rejected the code or returned an unusable profile (502)."""
    status_code = 502
    error_code = "bad_gateway"
    message_id = "error.oauth_exchange"

    def __init__(self, message: str, *, provider: str, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.provider = provider
        self.detail.setdefault("provider", provider)


class UnavailableError(ServiceError):
    """A backing store, cache or provider is unreachable (503)."""
    status_code = 503
    error_code = "unavailable"
    message_id = "error.unavailable"
    retryable = True


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "InvalidSignatureError",
    "TokenExpiredError",
    "TokenUserMismatchError",
    "TokenRevokedError",
    "NotFoundError",
    "ConflictError",
    "AlreadyExistsError",
    "ServerError",
    "PasswordHashingError",
    "OAuthExchangeError",
    "UnavailableError",
]
