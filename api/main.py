"""
api/main.py -- FastAPI application entry point for WikiMillionaire auth.

Exposes the dual Wikimedia login (OAuth 1.0a and OAuth 2.0 + PKCE) and the
session endpoints over HTTP.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (settings, database provider, token issuer, purge
task) and shutdown (cancel purge task, close DB engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import Response
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import HealthResponse
from api.responses import error_json, error_response
from api.routes.oauth1 import router as oauth1_router
from api.routes.oauth2 import router as oauth2_router
from api.routes.session import router as session_router
from auth.store import create_database_provider
from auth.tokens import TokenIssuer
from core.config import get_settings
from core.errors import AuthError, TokenError

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("wikimillionaire.api")

PURGE_INTERVAL_SECONDS = 6 * 60 * 60

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired refresh tokens every 6 hours.

    get_refresh_token() already ignores expired rows; this only keeps the
    table from growing. The DB call runs in the threadpool so a slow backend
    never blocks the event loop. A failed purge is logged and retried on the
    next tick. CancelledError from task.cancel() during shutdown propagates
    out of asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            removed = await run_in_threadpool(app.state.db_provider.purge_expired_refresh_tokens)
        except AuthError as exc:
            logger.error("Refresh token purge failed: %s", exc.message)
        else:
            logger.info("Purged %d expired refresh tokens", removed)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings -- every other component is built from them.
      2. Database provider -- selected once from DB_TYPE; initialize() is
         idempotent so running it on every start is safe.
      3. Token issuer -- parses the expiry durations, failing fast on typos.
      4. Purge task last -- references app.state.db_provider.
    """
    logger.info("WikiMillionaire auth API starting up")
    settings = get_settings()
    app.state.settings = settings
    app.state.db_provider = create_database_provider(settings)
    app.state.db_provider.initialize()
    app.state.token_issuer = TokenIssuer.from_settings(settings)
    logger.info(
        "Auth initialized (oauth1=%s, oauth2=%s, db=%s)",
        settings.oauth1_configured,
        settings.oauth2_configured,
        app.state.db_provider.name,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.db_provider.close()
    logger.info("WikiMillionaire auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="WikiMillionaire Auth API",
    description="Wikimedia login (OAuth 1.0a and OAuth 2.0 + PKCE) and JWT sessions.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Query strings are not logged: callbacks carry codes and verifiers.
# ---------------------------------------------------------------------------


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

app.include_router(oauth1_router, prefix="/api", tags=["OAuth 1.0a"])
app.include_router(oauth2_router, prefix="/api", tags=["OAuth 2.0"])
app.include_router(session_router, prefix="/api", tags=["Session"])
# Web UI router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Exception handlers
#
# JSON errors all use the {"error": "<message>"} envelope. Login-step
# failures that a browser is navigating through become redirects instead.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Return 429 when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = error_json(429, "Too many requests.")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
    return error_json(422, "Request validation failed.")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> Response:
    response = error_json(exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> Response:
    """Handle AuthError raised outside finish_login (the login-start routes, /me).

    TokenError -> 401 JSON. ProtocolError / TransientStateError -> redirect to
    the error page. PersistenceError / ConfigurationError -> 500 JSON with the
    public message; the internal message stays in the log.
    """
    if isinstance(exc, TokenError):
        return error_json(401, exc.public_message)
    logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return error_response(request.app.state.settings, exc)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> Response:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_json(500, "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request) -> Response:
    """Return API liveness and database reachability (503 if the DB is down)."""
    if request.app.state.db_provider.ping():
        return HealthResponse(version=VERSION)
    return Response(
        status_code=503,
        media_type="application/json",
        content=HealthResponse(status="degraded", version=VERSION, database="error").model_dump_json(),
    )
