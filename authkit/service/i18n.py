"""Message catalogs for user-facing error strings.

The catalog is built once at startup and handed to request handlers; there is
no module-level active language.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

DEFAULT_MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        "error.validation": "validation error",
        "error.unauthorized": "authentication failed",
        "error.auth_header_missing": "X-Auth-Token header required",
        "error.invalid_credentials": "invalid credentials",
        "error.invalid_token": "authentication failed",
        "error.token_expired": "authentication failed",
        "error.token_revoked": "authentication failed",
        "error.not_found": "not found",
        "error.user_not_found": "user not found",
        "error.conflict": "conflict",
        "error.user_exists": "user already exists",
        "error.server": "internal server error",
        "error.oauth_exchange": "could not complete sign-in with the provider",
        "error.oauth_email_missing": "the provider did not share an email address",
        "error.oauth_state_mismatch": "sign-in request expired or was tampered with",
        "error.unsupported_provider": "unsupported provider",
        "error.provider_not_configured": "provider is not configured",
        "error.unavailable": "service temporarily unavailable",
        "auth.logged_out": "logged out",
    },
    "es": {
        "error.validation": "error de validación",
        "error.unauthorized": "autenticación fallida",
        "error.auth_header_missing": "se requiere la cabecera X-Auth-Token",
        "error.invalid_credentials": "credenciales inválidas",
        "error.invalid_token": "autenticación fallida",
        "error.token_expired": "autenticación fallida",
        "error.token_revoked": "autenticación fallida",
        "error.not_found": "no encontrado",
        "error.user_not_found": "usuario no encontrado",
        "error.conflict": "conflicto",
        "error.user_exists": "el usuario ya existe",
        "error.server": "error interno del servidor",
        "error.oauth_exchange": "no se pudo completar el inicio de sesión con el proveedor",
        "error.oauth_email_missing": "el proveedor no compartió una dirección de correo",
        "error.oauth_state_mismatch": "la solicitud de inicio de sesión caducó o fue alterada",
        "error.unsupported_provider": "proveedor no soportado",
        "error.provider_not_configured": "el proveedor no está configurado",
        "error.unavailable": "servicio temporalmente no disponible",
        "auth.logged_out": "sesión cerrada",
    },
}


@dataclass(frozen=True)
class Translator:
    """Catalog bound to one resolved language."""

    language: str
    messages: Mapping[str, str]
    fallback: Mapping[str, str]

    def t(self, message_id: str, default: Optional[str] = None) -> str:
        if message_id in self.messages:
            return self.messages[message_id]
        if message_id in self.fallback:
            return self.fallback[message_id]
        return default if default is not None else message_id


class TranslationCatalog:
    def __init__(
        self,
        catalogs: Optional[Mapping[str, Mapping[str, str]]] = None,
        *,
        default_language: str = "en",
    ) -> None:
        self._catalogs: Dict[str, Mapping[str, str]] = dict(catalogs or DEFAULT_MESSAGES)
        self.default_language = (
            default_language if default_language in self._catalogs else "en"
        )

    @property
    def languages(self) -> list[str]:
        return sorted(self._catalogs)

    def resolve(self, requested: Optional[str]) -> str:
        """Map an ``Accept-Language`` value or bare tag to a loaded language."""
        if not requested:
            return self.default_language
        for part in requested.split(","):
            tag = part.split(";")[0].strip().lower().replace("_", "-")
            if not tag or tag == "*":
                continue
            if tag in self._catalogs:
                return tag
            base = tag.split("-")[0]
            if base in self._catalogs:
                return base
        return self.default_language

    def translator(self, requested: Optional[str] = None) -> Translator:
        language = self.resolve(requested)
        return Translator(
            language=language,
            messages=self._catalogs.get(language, {}),
            fallback=self._catalogs.get(self.default_language, {}),
        )
