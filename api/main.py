"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, stats, sync
from core.config import settings
from core.exceptions import (
    AlreadyRunningError,
    CheckpointError,
    ExtractionError,
    InvalidTransitionError,
    RunNotFoundError,
    RunNotResumableError,
    SyncException,
    SyncPausedError,
)
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from ingestion.command_center import CommandCenter
from ingestion.runner import SyncRunner
from ingestion.scheduler import SyncScheduler

# Configure logging
setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Sync Run Engine API",
    description="Operator API for resumable source syncs and the canonical customer merge",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)


# Include routers
app.include_router(health.router)
app.include_router(stats.router)
app.include_router(sync.router)


# ============================================================================
# Error mapping
# ============================================================================

ERROR_STATUS_CODES = [
    (AlreadyRunningError, 409),
    (RunNotResumableError, 409),
    (InvalidTransitionError, 409),
    (RunNotFoundError, 404),
    (SyncPausedError, 423),
    (CheckpointError, 409),
    (ExtractionError, 502),
]


@app.exception_handler(SyncException)
async def sync_exception_handler(request: Request, exc: SyncException):
    status_code = next((code for cls, code in ERROR_STATUS_CODES if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error(f"Request {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "error": exc.to_dict(),
            "request_id": getattr(request.state, "request_id", None),
        }
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Sync Run Engine API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if getattr(app.state, "runner", None) is None:
        app.state.runner = SyncRunner()
    app.state.command_center = CommandCenter(app.state.runner)

    app.state.scheduler = None
    if settings.SCHEDULER_ENABLED:
        app.state.scheduler = SyncScheduler(app.state.runner)
        app.state.scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Sync Run Engine API")
    if getattr(app.state, "scheduler", None) is not None:
        app.state.scheduler.stop()
    await app.state.runner.shutdown()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Sync Run Engine API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "runs": "/sync/runs",
            "stats": "/stats"
        }
    }
