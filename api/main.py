"""
api/main.py -- FastAPI application entry point for SessionGate.

Run with:      uvicorn api.main:app --reload
               python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- lets the frontend origin send the session cookie
  3. SessionMiddleware     -- signed cookie holding the OAuth state parameter

Lifespan builds the collaborators once, from one Settings instance, and
parks them on app.state:
  settings, store, cookie_codec, sessions, identity, orchestrator
Route handlers and the RBAC gate read them from there; nothing is a module
global.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.protected import router as protected_router
from auth.cookies import CookieCodec
from auth.errors import StorageFailure
from auth.oauth import OAuthIdentityClient, build_oauth_registry
from auth.orchestrator import AuthOrchestrator
from auth.sessions import SessionService
from auth.store import AuthStore
from core.config import Settings, get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessiongate.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, older_than_days: int) -> None:
    """Prune long-expired sessions every 6 hours.

    Only started when SESSION_PURGE_AFTER_DAYS > 0. Storage errors are logged
    and the loop carries on; CancelledError from shutdown unwinds it.
    """
    while True:
        await asyncio.sleep(6 * 60 * 60)
        try:
            await run_in_threadpool(app.state.sessions.purge_expired, older_than_days)
        except StorageFailure:
            logger.exception("Session purge failed")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, settings: Settings, store: AuthStore, identity=None) -> None:
    """Build the auth collaborators around store and attach them to app.state.

    identity defaults to the authlib-backed client; tests pass a fake.
    """
    cookies = CookieCodec(settings)
    sessions = SessionService(store, settings)
    if identity is None:
        identity = OAuthIdentityClient(build_oauth_registry(settings), settings)
    app.state.settings = settings
    app.state.store = store
    app.state.cookie_codec = cookies
    app.state.sessions = sessions
    app.state.identity = identity
    app.state.orchestrator = AuthOrchestrator(settings, store, sessions, cookies, identity)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store and wire services on startup; tear down symmetrically on shutdown."""
    logger.info("SessionGate API starting up")
    store = AuthStore(_settings.database_url)
    wire_services(app, _settings, store)
    logger.info(
        "Auth initialized (cookie=%s, ttl=%ss, providers=%s)",
        _settings.cookie_name,
        _settings.session_ttl_seconds,
        app.state.identity.providers,
    )
    purge_task = None
    if _settings.session_purge_after_days > 0:
        purge_task = asyncio.create_task(_purge_loop(app, _settings.session_purge_after_days))

    yield

    if purge_task is not None:
        purge_task.cancel()
    store.close()
    logger.info("SessionGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionGate API",
    description="OAuth sign-in, cookie sessions and role-gated endpoints.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the existing stack, so the LAST one registered is
# the first to see a request. Registered innermost-first here so requests hit
# TrustedHost -> CORS -> Session.
# ---------------------------------------------------------------------------

# authlib keeps the OAuth state value in this signed session between the
# authorization redirect and the callback. It is unrelated to the
# first-party session cookie.
app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key, https_only=_settings.cookie_secure)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.effective_cors_origins,
    allow_credentials=True,  # the session cookie must ride along on cross-origin fetches
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)


# ---------------------------------------------------------------------------
# Request logging middleware
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(protected_router, prefix="/api/v1", tags=["Protected"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all HTTP exceptions, including the gate's 401/403.

    When detail is already a structured dict (Unauthenticated, Forbidden), use
    it directly as the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"], response_model=HealthResponse)
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    if request.app.state.store.ping():
        return HealthResponse(version=__version__, components={"app": "ok", "database": "ok"})
    return HealthResponse(status="degraded", version=__version__, components={"app": "ok", "database": "error"})
