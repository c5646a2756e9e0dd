"""
api/main.py -- FastAPI application entry point for multiauth.

Exposes the authentication core over HTTP as JSON endpoints. No session
cookies or tokens are issued; callers that need sessions build them on top of
a successful /auth/login response.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- one access log line per request
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens the database engine and the three stores on startup and
disposes of the engine on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse, PolicyViolationModel
from api.routes.v1.auth import router as auth_router
from auth.errors import (
    AccountDisabledError,
    ActivationCodeError,
    AuthError,
    ConfigurationError,
    InvalidCredentialsError,
    MissingCredentialsError,
    NotActivatedError,
    PasswordPolicyError,
    PreAuthRejectedError,
    TransportError,
    UnknownUserError,
    UnsupportedOperation,
    ValidationFailure,
)
from auth.store import ConfigStore, MethodStore, UserStore, create_db_engine
from core.config import get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("multiauth.api")

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the engine and stores on startup; dispose of the engine on shutdown."""
    settings = get_settings()
    logger.info("multiauth API starting up")
    engine = create_db_engine(settings.database_url)
    app.state.engine = engine
    app.state.user_store = UserStore(engine)
    app.state.method_store = MethodStore(engine)
    app.state.config_store = ConfigStore(engine)
    if app.state.method_store.count() == 0:
        logger.warning("No authentication methods are configured; every login will fail")

    yield

    engine.dispose()
    logger.info("multiauth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="multiauth API",
    description="Pluggable username/password authentication: local, LDAP, LDAPS and SSH backends.",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# Most specific class first; the first isinstance match wins.
_AUTH_ERROR_STATUS: tuple[tuple[type[AuthError], int], ...] = (
    (InvalidCredentialsError, 401),
    (MissingCredentialsError, 400),
    (AccountDisabledError, 403),
    (PreAuthRejectedError, 403),
    (NotActivatedError, 403),
    (UnknownUserError, 404),
    (ActivationCodeError, 400),
    (PasswordPolicyError, 400),
    (ValidationFailure, 400),
    (TransportError, 503),
    (UnsupportedOperation, 409),
    (ConfigurationError, 500),
)


def auth_error_status(exc: AuthError) -> int:
    for cls, status in _AUTH_ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth error taxonomy onto HTTP statuses.

    Infrastructure failures are logged at error level so operators can alert
    on them separately from credential noise, which is logged at warning level.
    """
    status = auth_error_status(exc)
    if status >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    else:
        logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)

    detail = None
    if isinstance(exc, PasswordPolicyError):
        detail = [PolicyViolationModel.from_violation(v) for v in exc.violations.values()]

    response = JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message, detail=detail)).model_dump(),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


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


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
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

    The raw exception goes to the log only, never to the response body.
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
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, current version and database reachability."""
    database = "ok"
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check could not reach the database")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": database},
    )
