from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from authkit.api.schemas import Envelope, ErrorBody
from authkit.logging import get_correlation_id, get_logger
from authkit.service.errors import AuthenticationError, ServiceError
from authkit.service.i18n import TranslationCatalog, Translator
from authkit.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# stable error codes by HTTP status
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
    502: "bad_gateway",
    503: "unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def request_translator(request: Request) -> Translator:
    """Pick the catalog language from ``Accept-Language``, then ``?lang=``."""
    catalog: Optional[TranslationCatalog] = getattr(request.app.state, "translations", None)
    if catalog is None:
        catalog = TranslationCatalog()
        request.app.state.translations = catalog
    requested = request.headers.get("accept-language") or request.query_params.get("lang")
    return catalog.translator(requested)


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(), headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-shaped handlers for domain, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            detail=exc.detail,
        )
        message = request_translator(request).t("error.conflict", exc.message)
        return _error_response(409, message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            error_type=type(exc).__name__,
            error_message=exc.message,
        )
        message = request_translator(request).t(exc.message_id, exc.message)
        # token failure reasons are logged above but never returned to the client
        details = None if isinstance(exc, AuthenticationError) else (exc.detail or None)
        headers = {"Retry-After": "1"} if exc.retryable else None
        if isinstance(exc, AuthenticationError):
            headers = {"WWW-Authenticate": "X-Auth-Token"}
        return _error_response(
            exc.status_code, message, details, code=exc.error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        # submitted values are left out so passwords never echo back
        details = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            fields=[".".join(d["loc"]) for d in details],
        )
        message = request_translator(request).t("error.validation")
        return _error_response(400, message, details, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        message = request_translator(request).t("error.server", "internal server error")
        return _error_response(500, message, code="server_error")
