from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shopauth.api.error_handling import register_exception_handlers
from shopauth.api.routes import router
from shopauth.config import get_settings
from shopauth.logging import get_logger, set_correlation_id
from shopauth.service.runtime import get_runtime
from shopauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the shared store on shutdown."""
    runtime = get_runtime()
    logger.info("shopauth_started", version=__version__)
    yield
    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="ShopAuth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return list(_settings.cors_allow_origins)
    # Avoid a wildcard: credentials (cookies) are always allowed.
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-CSRF-Token",
        "X-Device-Fingerprint",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    max_age=3600,
)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Auth responses carry tokens; never let a proxy cache them.
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and _settings.cookie_secure:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line and response with the request's correlation id.

    Taken from ``X-Request-ID`` when the caller supplies one, otherwise
    generated, and echoed back in the ``X-Request-ID`` response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Liveness plus a bounded ping of the shared store."""
    runtime = get_runtime()
    try:
        store_ok = await runtime.store.ping()
    except StoreUnavailable:
        store_ok = False
    status = "ok" if store_ok else "degraded"
    if not store_ok:
        logger.error("health_check_store_failed")
    return JSONResponse(
        status_code=200 if store_ok else 503,
        content={
            "status": status,
            "version": __version__,
            "checks": {"shared_store": "ok" if store_ok else "unavailable"},
        },
    )
