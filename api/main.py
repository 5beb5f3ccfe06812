"""
api/main.py -- FastAPI application entry point for AuthCore.

Exposes the auth core over HTTP. The core itself (auth/) knows nothing
about HTTP; this module wires it to a store, mounts the routers, and turns
AuthCoreError subclasses into status codes.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- CORS headers (with credentials) for trusted origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (store, orchestrator, session reaper task) and
shutdown (cancel reaper, dispose the engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from api.routes.organizations import router as organizations_router
from auth.errors import (
    AuthCoreError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    InternalError,
    TransientStorageError,
    ValidationError,
)
from auth.orchestrator import AuthOrchestrator
from auth.store import AuthStore
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authcore.api")

# ---------------------------------------------------------------------------
# Background session reaper
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired session rows every SESSION_PURGE_INTERVAL_SECONDS.

    Storage hygiene only: validation treats expired rows as invalid whether
    or not they have been purged. The blocking DB call runs in a worker
    thread. A storage hiccup is logged and retried on the next tick rather
    than killing the loop.
    """
    interval = app.state.settings.session_purge_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(app.state.auth.sessions.purge_expired)
        except TransientStorageError:
            logger.warning("Session purge skipped: storage unavailable")
            continue
        if removed:
            logger.info("Purged %d expired session(s)", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the store and orchestrator on startup; tear them down on shutdown."""
    logger.info("AuthCore API starting up")
    settings = get_settings()
    app.state.settings = settings
    app.state.store = AuthStore.from_settings(settings)
    app.state.auth = AuthOrchestrator(app.state.store, settings)
    logger.info(
        "Auth initialized (self_registration=%s, sliding_refresh=%s, max_age=%ds)",
        settings.self_registration_enabled,
        settings.session_sliding_refresh,
        settings.session_max_age_seconds,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("AuthCore API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="AuthCore API",
    description="Email/password authentication, sessions and organization membership.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack -- register in the order a request should meet them.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.trusted_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(organizations_router, prefix="/api", tags=["Organizations"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so clients can parse
# errors uniformly.
# ---------------------------------------------------------------------------

_STATUS_BY_FAMILY: list[tuple[type[AuthCoreError], int]] = [
    (ValidationError, 400),
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (ConflictError, 409),
    (TransientStorageError, 503),
    (InternalError, 500),
]


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthCoreError)
async def auth_error_handler(request: Request, exc: AuthCoreError) -> JSONResponse:
    """Map an auth-core error family to its status code.

    Every AuthenticationError renders as the same "unauthenticated" body:
    the subclass (expired, revoked, wrong password, ...) is logged, never
    returned.
    """
    status_code = next((status for family, status in _STATUS_BY_FAMILY if isinstance(exc, family)), 500)
    if isinstance(exc, AuthenticationError):
        response = _error_response(401, "unauthenticated", AuthenticationError.message)
    elif isinstance(exc, InternalError) or status_code == 500:
        logger.error("Internal error on %s %s: %s", request.method, request.url.path, exc)
        response = _error_response(500, InternalError.code, InternalError.message)
    else:
        response = _error_response(status_code, exc.code, exc.message)
    if isinstance(exc, TransientStorageError):
        response.headers["Retry-After"] = "1"
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", detail=str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 when the request body or query fails schema validation."""
    return _error_response(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint -- no auth, no rate limit.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip check."""
    try:
        database = "ok" if request.app.state.store.ping() else "error"
    except TransientStorageError:
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
