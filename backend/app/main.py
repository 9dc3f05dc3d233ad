"""gigsettle Backend API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from gigsettle import __version__
from gigsettle.errors import ErrorKind, SettlementError

from .config import get_settings
from .database import Engine, get_engine
from .logging_config import configure_logging, get_logger
from .models import ErrorResponse
from .rate_limit import limiter
from .routes import (
    disputes_router,
    escrows_router,
    jobs_router,
    maintenance_router,
    notifications_router,
    proposals_router,
)

logger = get_logger("gigsettle.api")

API_PREFIX = "/api/v1"

ERROR_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.STATE: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.LEDGER: 503,
    ErrorKind.AUTHORIZATION: 403,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    configure_logging(settings.debug)
    logger.info(f"Starting gigsettle API (debug={settings.debug}, storage={settings.storage_backend})")

    sweeper = None
    if settings.sweep_enabled:
        thread, stop_event = get_engine().sweeper.start_background(settings.sweep_interval_seconds)
        sweeper = (thread, stop_event)
    yield
    if sweeper is not None:
        thread, stop_event = sweeper
        stop_event.set()
        thread.join(timeout=5)
    logger.info("Shutting down gigsettle API")


app = FastAPI(
    title="gigsettle API",
    description="Escrow and milestone settlement for freelance jobs",
    version=__version__,
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    status_code = ERROR_STATUS.get(exc.kind, 400)
    message = f"{request.method} {request.url.path} | {exc.kind.value} | {exc.message}"
    if exc.kind in (ErrorKind.LEDGER, ErrorKind.CONFLICT):
        logger.error(message)
    else:
        logger.warning(message)
    headers = {"Retry-After": "1"} if exc.retryable else None
    body = ErrorResponse.model_validate(exc.to_dict())
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(jobs_router, prefix=API_PREFIX)
app.include_router(proposals_router, prefix=API_PREFIX)
app.include_router(escrows_router, prefix=API_PREFIX)
app.include_router(disputes_router, prefix=API_PREFIX)
app.include_router(notifications_router, prefix=API_PREFIX)
app.include_router(maintenance_router, prefix=API_PREFIX)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "gigsettle-backend",
        "version": __version__,
        "status": "ok",
    }


@app.get("/health")
def health(engine: Engine):
    """Detailed health check with an actual storage query."""
    storage_status = "disconnected"
    try:
        engine.storage.list_jobs(limit=1)
        storage_status = "connected"
    except Exception as e:
        storage_status = f"error: {str(e)[:50]}"

    overall_status = "healthy" if storage_status == "connected" else "degraded"
    return {
        "status": overall_status,
        "storage": storage_status,
    }
