"""
api/main.py -- FastAPI application entry point for the church auth service.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. log_requests          -- method, path, status, latency per request

Per-address login throttling is applied by the slowapi decorator on the login
route itself (api/limiter.py); per-username throttling and every other access
decision goes through the Guard built in lifespan.

Lifespan handles startup (stores, limiter, guard, sweep task) and shutdown
(cancel sweep task, close the DB engine) symmetrically.
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

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.responses import json_responder
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.middleware import Guard
from auth.ratelimit import RateLimiter
from auth.sessions import SessionStore
from auth.store import UserStore
from core.config import get_settings

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("church.api")

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: int) -> None:
    """Delete expired sessions every `interval` seconds.

    Lookups already refuse expired sessions; the sweep only keeps the table
    from growing. The store call is synchronous and short, so it runs in a
    worker thread to keep the event loop free.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(app.state.session_store.cleanup_expired)
        except Exception:
            logger.exception("Expired-session sweep failed")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_guard(user_store: UserStore) -> tuple[SessionStore, RateLimiter, Guard]:
    """Construct the process-wide session store, attempt limiter and guard."""
    settings = get_settings()
    session_store = SessionStore(user_store, default_ttl=settings.session_ttl_seconds)
    rate_limiter = RateLimiter(
        max_attempts=settings.rate_limit_max_attempts,
        window_seconds=settings.rate_limit_window_seconds,
        storage_uri=settings.rate_limit_storage_uri,
    )
    guard = Guard(session_store, rate_limiter, responder=json_responder)
    return session_store, rate_limiter, guard


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime."""
    settings = get_settings()
    logger.info("Church auth API starting up")
    app.state.user_store = UserStore(settings.database_url)
    app.state.session_store, app.state.rate_limiter, app.state.guard = build_guard(app.state.user_store)
    if not app.state.user_store.has_users():
        logger.warning("No user accounts exist yet -- create one with `python main.py create-user`")
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.session_cleanup_interval_seconds))
    logger.info(
        "Auth initialized (session_ttl=%ds, rate_limit=%d/%ds)",
        settings.session_ttl_seconds,
        settings.rate_limit_max_attempts,
        settings.rate_limit_window_seconds,
    )

    yield

    app.state.sweep_task.cancel()
    app.state.user_store.close()
    logger.info("Church auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Church Auth API",
    description="Authentication, sessions and access control for the church management system.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

# slowapi looks for app.state.limiter by convention.
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
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope that the Guard's
# responder produces, so clients parse one error shape everywhere.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 for the per-address login limit. Names the identifier class only."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limit_exceeded",
                message="Too many attempts. Please try again later.",
                detail="client",
                retry_after=retry_after,
            )
        ).model_dump(exclude_none=True),
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
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for anything that escaped outside a Guard.protect() handler.

    The raw exception goes to the log only, never into the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(code="internal_error", message="An unexpected error occurred.")
        ).model_dump(exclude_none=True),
    )


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Liveness plus a one-query database probe. No auth, no rate limit."""
    components = {"app": "ok", "database": "ok"}
    try:
        request.app.state.user_store.ping()
    except Exception:
        logger.exception("Health check database probe failed")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=__version__, components=components)
