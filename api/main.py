"""
api/main.py -- FastAPI application entry point for tokenward.

Exposes the authentication core over HTTP: login and registration, token
refresh/revocation, validation, and user administration.

Run with:      python main.py serve
               uvicorn api.main:app --reload

A request passes TrustedHost (ALLOWED_HOSTS), then CORS (CORS_ORIGINS, with
credentials so the refresh cookie flows), then SlowAPI (per-route limits
declared in the routers).

Lifespan handles startup (engine, stores, service, cleanup task) and
shutdown (stop cleanup task, dispose engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.blacklist import BlacklistStore
from auth.cleanup import CleanupScheduler
from auth.credentials import CredentialVerifier
from auth.database import create_auth_engine
from auth.dependencies import get_current_user
from auth.errors import StoreUnavailableError
from auth.models import User
from auth.refresh_tokens import RefreshTokenStore
from auth.service import AuthService
from auth.sessions import SessionTracker
from auth.store import UserStore
from auth.tokens import TokenCodec
from core.config import Settings, get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tokenward.api")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def configure_state(app: FastAPI, settings: Settings, engine: Engine) -> None:
    """Build the stores, codec and service for one engine and attach them to app.state.

    Shared by the real lifespan and the test fixtures so both wire the
    object graph the same way.
    """
    user_store = UserStore(engine)
    refresh_store = RefreshTokenStore(engine)
    blacklist = BlacklistStore(engine)
    sessions = SessionTracker(engine)
    codec = TokenCodec(
        settings.secret_key,
        issuer=settings.token_issuer,
        audience=settings.token_audience,
        access_token_lifetime=timedelta(minutes=settings.access_token_minutes),
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.user_store = user_store
    app.state.refresh_token_store = refresh_store
    app.state.blacklist = blacklist
    app.state.session_tracker = sessions
    app.state.auth_service = AuthService(
        user_store,
        refresh_store,
        blacklist,
        sessions,
        codec,
        CredentialVerifier(user_store),
        refresh_token_lifetime=timedelta(days=settings.refresh_token_days),
        max_refresh_tokens_per_user=settings.max_refresh_tokens_per_user,
    )
    app.state.cleanup = CleanupScheduler(
        blacklist,
        refresh_store,
        sessions,
        interval=timedelta(minutes=settings.cleanup_interval_minutes),
        inactivity_threshold=timedelta(days=settings.session_inactivity_days),
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the database, wire app.state and start the cleanup task.

    Order:
      1. Engine first -- create_all runs here, so every table exists before
         any store touches it.
      2. Stores and service second -- they only hold the engine.
      3. Cleanup task last -- it sweeps through the stores.

    Shutdown sets the stop event and waits for the task; a sweep in progress
    finishes before the engine is disposed.
    """
    # Startup
    logger.info("tokenward API starting up")
    settings = get_settings()
    engine = create_auth_engine(settings.database_url)
    configure_state(app, settings, engine)
    logger.info(
        "Auth initialized (users_present=%s, external_auth=%s)",
        app.state.user_store.has_users(),
        settings.external_auth_enabled,
    )
    app.state.cleanup_stop = asyncio.Event()
    app.state.cleanup_task = asyncio.create_task(app.state.cleanup.run(app.state.cleanup_stop))

    yield

    # Shutdown
    app.state.cleanup_stop.set()
    await app.state.cleanup_task
    engine.dispose()
    logger.info("tokenward API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="tokenward API",
    description="Authentication, token lifecycle and bitmask permissions.",
    version=API_VERSION,
    lifespan=lifespan,
    # /docs and /redoc are re-registered below behind get_current_user.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Host check, then CORS, then rate limits. The refresh cookie needs
# allow_credentials; X-Device-Info and X-Session-Id are read by auth.dependencies.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH"],
    allow_headers=["Content-Type", "Authorization", "X-Device-Info", "X-Session-Id"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPIMiddleware finds the limiter on app.state.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Access log: method, path, status, latency, client address.
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
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# API documentation (bearer token required)
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI for authenticated callers."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="tokenward API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc for authenticated callers."""
    return get_redoc_html(openapi_url="/openapi.json", title="tokenward API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves as {"error": {"code", "message", "detail"}}.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 rate_limited with a Retry-After header."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc.detail),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 validation_error; detail carries the pydantic error list."""
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


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap HTTPException in the error envelope.

    Routes raise with detail={"code", "message"[, "detail"]}; that dict becomes
    the error object as is. Plain string details get an http_<status> code.
    Headers such as WWW-Authenticate and Cache-Control pass through.
    """
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        error = {"detail": None, **exc.detail}
        return JSONResponse(status_code=exc.status_code, content={"error": error}, headers=headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=headers,
    )


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    """Return 503 when a backing store fails.

    The service already logged the underlying SQLAlchemy error; nothing about
    it reaches the response body.
    """
    logger.error("Store unavailable on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(
                code="service_unavailable",
                message="The service is temporarily unavailable.",
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 internal_error. The exception goes to the log, never to the client."""
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
# Unauthenticated and not rate-limited; probes hit it constantly.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness, version and a database round-trip check.

    503 with status "degraded" when the database cannot answer SELECT 1.
    """
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: database probe failed")
        body = HealthResponse(status="degraded", version=API_VERSION, database="error")
        return JSONResponse(status_code=503, content=body.model_dump())
    return JSONResponse(content=HealthResponse(version=API_VERSION).model_dump())
