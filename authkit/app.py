from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from authkit.api.error_handling import register_exception_handlers
from authkit.api.routes import router
from authkit.api.schemas import Envelope, ErrorBody, HealthResponse
from authkit.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release pools on shutdown."""
    from authkit.service.runtime import get_runtime

    runtime = get_runtime()
    app.state.translations = runtime.translations
    logger.info("app_started", version=__version__)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="authkit", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id for logs and the response header.

    The id is taken from X-Request-ID when the client sends one, otherwise a
    new UUID is generated.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # responses may carry bearer tokens
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health")
async def health():
    """Report store and token cache reachability."""
    from authkit.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {}

    try:
        store_ok = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store")
        store_ok = False
    checks["store"] = "ok" if store_ok else "unavailable"

    try:
        cache_ok = await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="token_cache")
        cache_ok = False
    # the cache is optional: a down cache degrades revocation but not login
    checks["token_cache"] = "ok" if cache_ok else "degraded"

    if store_ok:
        envelope = Envelope(status="ok", data=HealthResponse(status="ok", **checks))
    else:
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="unavailable", message="store unavailable", details=checks),
        )
    return JSONResponse(
        status_code=200 if store_ok else 503, content=envelope.model_dump()
    )
