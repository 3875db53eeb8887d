import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import appointments, auth, providers, slots
from app.core.config import _ENV_FILE, settings
from app.core.db import create_store
from app.core.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    SchedulingError,
    TransientStoreError,
    ValidationError,
)
from app.services.booking_service import complete_due_appointments
from app.services.email_service import EmailNotificationSink
from app.services.notifications import ChangeFeed, LoggingNotificationSink
from app.services.seed_service import seed_sample_data

if os.getenv("ENV") != "production":
    logging.basicConfig(level=logging.DEBUG)
else:
    logging.basicConfig(
        level=logging.INFO,
        format='{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s"}',
    )
logger = logging.getLogger(__name__)


async def _run_completion_sweep(app: FastAPI) -> None:
    """Complete confirmed appointments that are past their start time plus grace."""
    try:
        await complete_due_appointments(
            app.state.store,
            grace_minutes=settings.auto_complete_grace_minutes,
            sinks=app.state.sinks,
        )
    except Exception as e:
        logger.exception("Completion sweep failed: %s", e)


async def _sweep_loop(app: FastAPI) -> None:
    while True:
        await _run_completion_sweep(app)
        await asyncio.sleep(settings.sweep_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Loading .env from: %s (exists: %s)", _ENV_FILE, _ENV_FILE.exists())
    store = await create_store(settings)
    feed = ChangeFeed()
    app.state.store = store
    app.state.feed = feed
    app.state.sinks = (feed, LoggingNotificationSink(), EmailNotificationSink(store))
    logger.info("Persistence backend: %s", settings.persistence_backend)
    if not settings.email_enabled:
        logger.warning("Email notifications: NOT configured (set SMTP_HOST, SMTP_USER, SMTP_PASSWORD, FROM_EMAIL)")
    if settings.seed_sample_data:
        await seed_sample_data(store, datetime.now(UTC).date())

    task = None
    if settings.auto_complete_enabled:
        logger.info(
            "Auto-complete: every %ds, %d min after start",
            settings.sweep_interval_seconds,
            settings.auto_complete_grace_minutes,
        )
        task = asyncio.create_task(_sweep_loop(app))
    yield
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    await store.close()


app = FastAPI(
    title="DocCare Scheduling API",
    description="Appointment scheduling: identity, availability, booking, appointments",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Refresh-Token"],
)

app.include_router(auth.router, prefix="/api/v1")
app.include_router(providers.router, prefix="/api/v1")
app.include_router(slots.router, prefix="/api/v1")
app.include_router(appointments.router, prefix="/api/v1")

_ERROR_STATUS: list[tuple[type[SchedulingError], int]] = [
    (ValidationError, 422),
    (ConflictError, 409),
    (NotFoundError, 404),
    (ForbiddenError, 403),
    (AuthenticationError, 401),
    (TransientStoreError, 503),
]


def _cors_headers(origin: str | None) -> dict[str, str]:
    """Add CORS headers to error responses so the browser doesn't block them."""
    headers = {
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Authorization, Content-Type, X-Refresh-Token",
    }
    if origin and origin in settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = origin
    elif settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = settings.cors_origins_list[0]
    return headers


def status_for(exc: SchedulingError) -> int:
    for kind, code in _ERROR_STATUS:
        if isinstance(exc, kind):
            return code
    return 500


@app.exception_handler(SchedulingError)
async def scheduling_exception_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    """Map the error taxonomy onto HTTP; retryable errors carry Retry-After."""
    headers = _cors_headers(request.headers.get("origin"))
    status_code = status_for(exc)
    if exc.retryable:
        headers["Retry-After"] = "1"
    if status_code >= 500:
        logger.error("%s: %s", type(exc).__name__, exc.message)
    if status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code, "retryable": exc.retryable},
        headers=headers,
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return actual error in JSON; include CORS so 500 responses are not blocked by browser."""
    origin = request.headers.get("origin")
    headers = _cors_headers(origin)
    if isinstance(exc, HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=headers,
        )
    logger.exception("Unhandled exception: %s", exc)
    detail = f"{type(exc).__name__}: {str(exc)}"
    return JSONResponse(
        status_code=500,
        content={"detail": detail},
        headers=headers,
    )


@app.get("/health")
async def health(request: Request) -> dict:
    """Store connectivity and record counts."""
    store = request.app.state.store
    try:
        await store.ping()
        counts = await store.counts()
    except SchedulingError as e:
        logger.warning("Health check: store unavailable: %s", e)
        return {"status": "degraded", "backend": settings.persistence_backend, "detail": e.message}
    return {"status": "ok", "backend": settings.persistence_backend, "counts": counts}
