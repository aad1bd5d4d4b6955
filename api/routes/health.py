"""
Health check endpoint with database and sync status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, text
from api.dependencies import get_db
from schemas.api import HealthCheckResponse
from models.base import JobStatus
from models.sync_job import SyncJob
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Whether a sync job is running and how the last one ended
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    sync_running = False
    last_status = None
    last_completed = None

    if db_connected:
        try:
            result = await db.execute(
                select(SyncJob).order_by(SyncJob.started_at.desc(), SyncJob.id.desc()).limit(1)
            )
            job = result.scalar_one_or_none()
            if job is not None:
                sync_running = job.status == JobStatus.RUNNING.value
                if not sync_running:
                    last_status = job.status
                    last_completed = job.completed_at
        except Exception as e:
            logger.error(f"Failed to fetch sync job status: {str(e)}")

    # Overall status is derived by the HealthCheckResponse validator
    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        sync_running=sync_running,
        last_sync_status=last_status,
        last_sync_completed_at=last_completed,
    )
