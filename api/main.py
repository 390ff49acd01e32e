"""
api/main.py -- FastAPI application entry point for userapi.

Run with:      uvicorn asgi:app --reload
               python main.py --port 8001

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins,
                              exposes X-CSRF-Token to the SPA

Lifespan owns every long-lived resource (account store, mailer, lifecycle
engine) on app.state and tears them down symmetrically on shutdown. There is
no module-level server state: stopping the server is uvicorn's job, driven by
its own signal handling.

All responses -- success and error -- use the Envelope shape
{"result": "ok"|"error", "message"?: str, "code": int}.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.models import Envelope, HealthResponse
from api.routes.v1.user import router as user_router
from auth.errors import (
    AccountAlreadyExists,
    AuthError,
    HashingFailure,
    InvalidCredentials,
    NotificationFailure,
    RefreshRejected,
    StoreUnavailable,
    TokenExpired,
    TokenInvalid,
    Unexpected,
    WrongEmail,
    WrongPassword,
    WrongVerificationCode,
)
from auth.lifecycle import CredentialLifecycle
from auth.mailer import build_mailer
from auth.store import AccountStore
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
logger = logging.getLogger("userapi.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Error kind -> HTTP status. The one place this mapping lives.
# ---------------------------------------------------------------------------

STATUS_BY_ERROR: dict[type[AuthError], int] = {
    InvalidCredentials: 400,
    WrongVerificationCode: 400,
    WrongEmail: 400,
    WrongPassword: 400,
    AccountAlreadyExists: 409,
    RefreshRejected: 401,
    TokenInvalid: 401,
    TokenExpired: 401,
    NotificationFailure: 502,
    StoreUnavailable: 429,
    HashingFailure: 500,
    Unexpected: 500,
}

# Seconds a client should wait before retrying after StoreUnavailable.
_RETRY_AFTER_SECONDS = 1


def _envelope(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=Envelope(result="error", message=message, code=status_code).model_dump(),
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the store, mailer, and lifecycle engine; dispose of them on shutdown."""
    logger.info("userapi starting up")
    app.state.account_store = AccountStore(
        db_url=_settings.database_url,
        pool_timeout=_settings.db_pool_timeout_seconds,
    )
    app.state.mailer = build_mailer(_settings)
    app.state.lifecycle = CredentialLifecycle(app.state.account_store, app.state.mailer)
    logger.info("Account store initialized (%s)", app.state.account_store.engine.dialect.name)

    yield

    app.state.mailer.close()
    app.state.account_store.close()
    logger.info("userapi shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="userapi",
    description="Account registration, email verification, sign-in, and token issuance.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins,
    allow_credentials=_settings.allow_credentials,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["User-Agent", "Content-Type", "X-CSRF-Token"],
    expose_headers=["X-CSRF-Token"],
    max_age=5,
)


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

app.include_router(user_router, prefix="/api/v1", tags=["User"])


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map an AuthError kind to its status and client message.

    HashingFailure and Unexpected are logged with the full cause chain and
    answered with a generic message; every other kind is not sensitive and
    is sent as-is.
    """
    status_code = STATUS_BY_ERROR.get(type(exc), 500)
    if status_code >= 500 and not isinstance(exc, NotificationFailure):
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc, exc_info=exc)
    else:
        logger.info("%s on %s %s", type(exc).__name__, request.method, request.url.path)
    response = _envelope(status_code, exc.client_message)
    if isinstance(exc, StoreUnavailable):
        response.headers["Retry-After"] = str(_RETRY_AFTER_SECONDS)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 when the request body cannot be decoded into the expected shape."""
    logger.info("Malformed request on %s %s: %s", request.method, request.url.path, exc.errors())
    return _envelope(400, "malformed request body")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Wrap FastAPI/Starlette HTTP exceptions in the envelope."""
    return _envelope(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged only, never written to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _envelope(500, Unexpected.message)


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and database reachability."""
    db_ok = request.app.state.account_store.ping()
    return HealthResponse(
        version=VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
