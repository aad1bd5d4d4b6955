"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import canonical, changes, health, stats, sync, workflow
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.exceptions import (
    DuplicateLinkError,
    InvalidTransitionError,
    PublishValidationError,
    ReconciliationError,
    RecordNotFoundError,
    SourceUnavailableError,
    UnknownFieldError,
)
from core.database import dispose_engine
from core.logging import setup_logging
from ingestion.orchestrator import SyncOrchestrator
from ingestion.scheduler import SyncScheduler
from schemas.api import ErrorResponse
import logging

setup_logging()
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Catalog Reconciliation API",
    description="Links scraped events, venues and artists to canonical records and runs the publish workflow",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Shared by the API and the scheduler so both see the same background tasks
orchestrator = SyncOrchestrator()
app.state.orchestrator = orchestrator
scheduler = SyncScheduler(orchestrator=orchestrator)


# Include routers
app.include_router(health.router)
app.include_router(workflow.router)
app.include_router(canonical.events_router)
app.include_router(canonical.venues_router)
app.include_router(canonical.artists_router)
app.include_router(changes.router)
app.include_router(sync.router)
app.include_router(stats.router)


# ============================================================================
# Error handling
# ============================================================================

ERROR_STATUS = (
    (RecordNotFoundError, 404),
    (InvalidTransitionError, 409),
    (DuplicateLinkError, 409),
    (PublishValidationError, 422),
    (UnknownFieldError, 400),
    (SourceUnavailableError, 502),
)


def status_for(exc: ReconciliationError) -> int:
    for exc_type, status_code in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status_code
    return 500


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    status_code = status_for(exc)
    request_id = getattr(request.state, "request_id", None)
    if status_code >= 500:
        logger.error(f"[{request_id}] {exc}", extra={"error_context": exc.to_dict()})
    else:
        logger.info(f"[{request_id}] {type(exc).__name__}: {exc.message}")

    context = {k: v for k, v in exc.context.items() if k not in ("fields", "error_timestamp")}
    body = ErrorResponse(
        error=type(exc).__name__,
        detail=exc.message,
        context=context,
        fields=getattr(exc, "fields", None),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Catalog Reconciliation API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    await orchestrator.reset_stale_jobs()
    if settings.SCHEDULER_ENABLED:
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Catalog Reconciliation API")
    if settings.SCHEDULER_ENABLED:
        scheduler.stop()
    await orchestrator.close()
    await dispose_engine()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Catalog Reconciliation API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "events": "/events",
            "venues": "/venues",
            "artists": "/artists",
            "changes": "/changes",
            "raw_records": "/raw-records",
            "sync": "/sync",
            "stats": "/stats"
        }
    }
