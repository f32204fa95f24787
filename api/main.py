"""
api/main.py -- FastAPI application entry point for SessionKeeper.

Run with:      python main.py serve
               uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers; credentials allowed for cookies

Lifespan builds the collaborators once (store, mailer, token issuer, service,
authenticator), attaches them to app.state, and starts the maintenance task.
Shutdown cancels the task, waits for a running sweep, then disposes of the engine.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.authenticator import RequestAuthenticator
from auth.mailer import EmailSender, SmtpEmailSender
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessionkeeper.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Collaborator wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI,
    store: AuthStore,
    mailer: EmailSender,
    settings: Settings,
    clock: Callable[[], datetime] | None = None,
) -> None:
    """Attach the store and everything built on it to app.state.

    Shared by the real lifespan and the test lifespan so both see the same
    object graph.
    """
    issuer = TokenIssuer(settings)
    app.state.settings = settings
    app.state.auth_store = store
    app.state.mailer = mailer
    app.state.token_issuer = issuer
    app.state.auth_service = AuthService(store, mailer, issuer, settings, clock=clock)
    app.state.authenticator = RequestAuthenticator(store, issuer, clock=clock)


# ---------------------------------------------------------------------------
# Background maintenance task
# ---------------------------------------------------------------------------


async def maintenance_loop(app: FastAPI, interval_hours: int) -> None:
    """Run the maintenance sweep every interval_hours.

    The sweep does blocking database work, so it runs in a worker thread.
    A failed sweep is logged and retried on the next tick; CancelledError
    from task.cancel() during shutdown unwinds the loop.
    """
    while True:
        await asyncio.sleep(interval_hours * 60 * 60)
        sweep = asyncio.ensure_future(asyncio.to_thread(app.state.auth_service.run_maintenance))
        try:
            await asyncio.shield(sweep)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; wait it out before unwinding.
            await asyncio.wait([sweep])
            raise
        except Exception:
            logger.exception("Maintenance sweep failed")


async def stop_maintenance(app: FastAPI) -> None:
    """Cancel the maintenance task and wait for it to unwind.

    A sweep already running in its worker thread finishes before this
    returns, so the engine is not disposed underneath it.
    """
    task = app.state.maintenance_task
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime."""
    logger.info("SessionKeeper API starting up")
    store = AuthStore(settings.database_url)
    mailer = SmtpEmailSender.from_settings(settings)
    if not mailer.is_configured:
        logger.warning("SMTP_HOST not set -- emails will be logged, not sent")
    wire_services(app, store, mailer, settings)
    app.state.maintenance_task = asyncio.create_task(
        maintenance_loop(app, settings.maintenance_interval_hours)
    )
    logger.info("Auth initialized (maintenance every %dh)", settings.maintenance_interval_hours)

    yield

    await stop_maintenance(app)
    store.close()
    logger.info("SessionKeeper API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionKeeper API",
    description="Account signup, email verification, login, session rotation and password recovery.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts,
)

# allow_credentials is required for the browser to send the auth cookies
# cross-origin; it forbids a wildcard origin list.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


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
# Exception handlers
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


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail=AuthError.to_detail() (a
    dict), which becomes the error field as-is.
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

    The raw exception is logged only; the client receives a generic message.
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
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=__version__)
