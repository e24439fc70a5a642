"""
api/main.py -- FastAPI application entry point for authgate.

Exposes registration, login, token refresh, logout and admin user management
over HTTP.

Install deps:  pip install -e .
Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. request_context       -- assigns X-Request-ID and logs every request
  2. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  3. CORSMiddleware        -- adds CORS headers for allowed browser origins
                              (credentials allowed: session cookies cross origins)
  4. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the shared engine, both stores and the SessionManager on
startup, starts the refresh-token purge task, and tears them down on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.errors import auth_error_response, error_response
from api.limiter import limiter
from api.models import HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.errors import AuthError
from auth.sessions import SessionManager
from auth.store import RefreshTokenStore, UserStore, create_store_engine
from core.config import get_settings

APP_VERSION = "0.1.0"

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")

# Accept a caller-supplied request id only if it is short and log-safe.
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Delete revoked-and-expired refresh records every `interval` seconds.

    Runs as a background asyncio task started in lifespan startup. The purge
    itself is blocking SQL, so it runs in the thread pool. Any SQLAlchemy error is
    logged and the loop waits for the next tick. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await run_in_threadpool(app.state.refresh_tokens.purge_expired)
        except SQLAlchemyError:
            logger.exception("Refresh token purge failed")
            continue
        if removed:
            logger.info("Purged %d expired refresh token(s)", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Engine and stores -- both repositories share one engine so the
         single-session replace can lock the user row in its transaction.
      2. SessionManager -- depends on both stores.
      3. Purge task last -- references app.state.refresh_tokens.
    """
    logger.info("authgate API starting up")
    engine = create_store_engine(settings.database_url)
    app.state.user_store = UserStore(engine=engine)
    app.state.refresh_tokens = RefreshTokenStore(engine)
    app.state.sessions = SessionManager(app.state.user_store, app.state.refresh_tokens)
    logger.info("Auth stores initialized (transport=%s)", settings.token_transport)

    purge_task = None
    if settings.token_purge_interval_seconds > 0:
        purge_task = asyncio.create_task(_purge_loop(app, settings.token_purge_interval_seconds))

    yield

    if purge_task is not None:
        purge_task.cancel()
        with suppress(asyncio.CancelledError):
            await purge_task
    app.state.user_store.close()
    logger.info("authgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authgate API",
    description="Token-based authentication and user management.",
    version=APP_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST registered is the
# outermost. Registered innermost-first: SlowAPI -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request context middleware
#
# Every request gets an id (the caller's X-Request-ID if it is log-safe, else
# a fresh uuid4). It is stored on request.state for the error envelope,
# echoed in the response header and included in the access log line.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def request_context(request: Request, call_next):
    incoming = request.headers.get("X-Request-ID", "")
    request_id = incoming if _REQUEST_ID_RE.match(incoming) else uuid.uuid4().hex
    request.state.request_id = request_id

    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "%s %s %d %.1fms %s rid=%s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        request_id,
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope (see api/errors.py) so
# API clients can parse errors uniformly without inspecting status codes to
# choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render the closed auth error taxonomy with its own status and code."""
    if exc.status_code >= 500:
        logger.error(
            "%s on %s %s rid=%s",
            exc.code,
            request.method,
            request.url.path,
            getattr(request.state, "request_id", None),
            exc_info=exc.__cause__,
        )
    return auth_error_response(request, exc)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After is derived from the window of the limit that tripped.
    """
    retry_after = 60
    limit = getattr(exc, "limit", None)
    if limit is not None:
        retry_after = int(limit.limit.get_expiry())
    logger.warning(
        "Rate limit exceeded on %s from %s",
        request.url.path,
        request.client.host if request.client else "unknown",
    )
    response = error_response(request, 429, "rate_limited", "Too many requests. Try again later.", str(exc.detail))
    response.headers["Retry-After"] = str(retry_after)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with field-level detail when the body or query fails validation."""
    detail = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    return error_response(request, 422, "validation_error", "Request validation failed.", detail)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for framework HTTP exceptions (unknown route, bad method)."""
    return error_response(request, exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(OperationalError)
async def database_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """Storage unreachable: 503 with a fixed message, full error to the log only."""
    logger.error(
        "Database unavailable on %s %s rid=%s",
        request.method,
        request.url.path,
        getattr(request.state, "request_id", None),
        exc_info=exc,
    )
    return error_response(request, 503, "unavailable", "Service temporarily unavailable.")


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only. The response body carries
    it in detail only when DEBUG=true.
    """
    logger.exception(
        "Unhandled exception on %s %s rid=%s",
        request.method,
        request.url.path,
        getattr(request.state, "request_id", None),
    )
    detail = f"{exc.__class__.__name__}: {exc}" if settings.debug else None
    return error_response(request, 500, "internal_error", "An unexpected error occurred.", detail)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request):
    """Return liveness, version and database reachability.

    Responds 503 with status "degraded" when the database does not answer.
    """
    db_ok = request.app.state.user_store.ping()
    payload = HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=APP_VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "unavailable"},
    )
    if not db_ok:
        return JSONResponse(status_code=503, content=payload.model_dump())
    return payload
