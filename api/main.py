"""
api/main.py -- FastAPI application entry point for SessionGate.

Exposes the session core over HTTP for both identity classes:
  /api/v1/auth/*        -- user class
  /api/v1/admin/auth/*  -- admin class (plus manager-only identity management)

Install deps:  pip install -e .
Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every service once (identity store, refresh ledger, identity
cache, OTP manager, one SessionCoordinator per identity class), stores them on
app.state, starts the cache purge task, and tears all of it down on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import build_admin_router, build_auth_router
from auth.ledger import RefreshTokenLedger
from auth.models import IdentityKind
from auth.otp import OtpChallengeManager
from auth.sessions import SessionCoordinator, SessionPolicy
from auth.store import IdentityStore
from cache.store import IdentityCache
from core.config import Settings, get_settings
from core.errors import CacheUnavailable, SessionError
from core.notifier import EmailNotifier

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessiongate.api")

settings = get_settings()


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def install_services(app: FastAPI, settings: Settings, store: IdentityStore, cache, notifier) -> None:
    """Build the session services on top of the given collaborators.

    Shared by the real lifespan and the test lifespan so both wire the same
    graph. Nothing here opens a connection of its own.
    """
    ledger = RefreshTokenLedger(
        store.engine,
        expire_days=settings.refresh_token_expire_days,
        max_tokens=settings.max_refresh_tokens,
    )
    app.state.settings = settings
    app.state.identity_store = store
    app.state.ledger = ledger
    app.state.cache = cache
    app.state.otp = OtpChallengeManager(
        store,
        notifier,
        cache=cache,
        code_length=settings.otp_length,
        expire_seconds=settings.otp_expire_seconds,
        delivery_timeout=settings.otp_delivery_timeout_seconds,
    )
    app.state.coordinators = {
        kind: SessionCoordinator(SessionPolicy.for_kind(kind, settings), store, ledger, cache, settings)
        for kind in IdentityKind
    }


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Purge expired identity-cache entries every `interval` seconds.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            removed = app.state.cache.purge_expired()
        except CacheUnavailable as e:
            logger.warning("Identity cache purge failed: %s", e.detail)
            continue
        if removed:
            logger.info("Purged %d expired identity cache entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Identity store first -- the ledger and OTP manager share its engine.
      2. Cache second -- must exist before the coordinators and the purge task.
      3. Purge task last -- references app.state.cache.
    """
    logger.info("SessionGate API starting up")
    store = IdentityStore(db_url=settings.database_url)
    cache = IdentityCache(settings.cache_db_path, ttl=settings.identity_cache_ttl_seconds)
    notifier = EmailNotifier.from_settings(settings)
    if not notifier.is_configured:
        logger.warning("SMTP not configured -- OTP codes will be logged as not sent")
    install_services(app, settings, store, cache, notifier)
    logger.info(
        "Auth initialized (admins=%s, users=%s)",
        store.has_identities(IdentityKind.admin),
        store.has_identities(IdentityKind.user),
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.cache_purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.otp.close()
    app.state.cache.close()
    app.state.identity_store.close()
    logger.info("SessionGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionGate API",
    description="Credential verification and session lifecycle for admins and company users.",
    version=settings.app_version,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH"],
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

app.include_router(build_auth_router(IdentityKind.user), prefix="/api/v1/auth", tags=["User Auth"])
app.include_router(build_auth_router(IdentityKind.admin), prefix="/api/v1/admin/auth", tags=["Admin Auth"])
app.include_router(build_admin_router(), prefix="/api/v1/admin/auth", tags=["Admin Identities"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(SessionError)
async def session_error_handler(request: Request, exc: SessionError) -> JSONResponse:
    """Render a typed core failure with its own status and code.

    Detail on server-side failures is only exposed in debug mode.
    """
    detail = exc.detail
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.detail)
        if not settings.debug:
            detail = None
    return _error(exc.status_code, exc.error_code, exc.message, detail)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Database error on %s %s", request.method, request.url.path)
    detail = str(exc) if settings.debug else None
    return _error(500, "server_error", "Failure from the server.", detail)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log. It is added to the response detail only
    when DEBUG=true; production clients receive a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    detail = "".join(traceback.format_exception(exc)) if settings.debug else None
    return _error(500, "internal_error", "An unexpected error occurred.", detail)


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=settings.app_version)
