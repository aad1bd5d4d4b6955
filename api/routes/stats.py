"""
Catalog statistics and sync metrics endpoint
"""
from datetime import datetime
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db
from core.config import settings
from schemas.api import StatsResponse, SourceRunSummary
from models.base import EntityType, JobStatus
from models.canonical import Event
from models.raw_record import RawRecord
from models.registry import ENTITY_MAPPINGS
from models.sync_job import SyncJob, SourceRun
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    request: Request,
    limit: int = Query(10, ge=1, le=100, description="Number of recent source runs to return"),
    db: AsyncSession = Depends(get_db)
):
    """
    Get catalog statistics and sync metrics.

    Returns:
    - Canonical and raw record counts
    - Events per lifecycle state and the size of the review queue
    - Raw records not yet linked (matched on the next sync)
    - Recent per-source scrape runs
    """
    request_id = getattr(request.state, "request_id", None)
    logger.info(f"[{request_id}] GET /stats")

    # ========== Record counts ==========

    canonical_counts = {}
    pending_changes = {}
    unlinked = {}
    for entity_type, mapping in ENTITY_MAPPINGS.items():
        Model = mapping.canonical
        canonical_counts[entity_type.value] = (
            await db.execute(select(func.count()).select_from(Model))
        ).scalar() or 0
        pending_changes[entity_type.value] = (
            await db.execute(
                select(func.count()).select_from(Model).where(Model.has_pending_changes.is_(True))
            )
        ).scalar() or 0
        unlinked[entity_type.value] = (
            await db.execute(
                select(func.count())
                .select_from(RawRecord)
                .outerjoin(mapping.link, mapping.link.raw_record_id == RawRecord.id)
                .where(
                    RawRecord.entity_type == entity_type,
                    RawRecord.source != settings.CURATED_SOURCE,
                    mapping.link.id.is_(None)
                )
            )
        ).scalar() or 0

    raw_by_source = await db.execute(
        select(RawRecord.source, func.count()).group_by(RawRecord.source)
    )
    raw_counts_by_source = {source: count for source, count in raw_by_source.all()}

    by_state = await db.execute(select(Event.state, func.count()).group_by(Event.state))
    events_by_state = {
        (state.value if hasattr(state, "value") else str(state)): count
        for state, count in by_state.all()
    }

    # ========== Sync history ==========

    last_success = (
        await db.execute(
            select(func.max(SyncJob.completed_at)).where(SyncJob.status == JobStatus.SUCCESS.value)
        )
    ).scalar()
    last_failure = (
        await db.execute(
            select(func.max(SyncJob.completed_at)).where(
                SyncJob.status.in_([JobStatus.FAILED.value, JobStatus.PARTIAL.value])
            )
        )
    ).scalar()

    recent = await db.execute(
        select(SourceRun).order_by(SourceRun.started_at.desc(), SourceRun.id.desc()).limit(limit)
    )
    recent_runs = [SourceRunSummary.model_validate(run) for run in recent.scalars().all()]

    logger.info(
        f"[{request_id}] Stats: {sum(canonical_counts.values())} canonical, "
        f"{sum(raw_counts_by_source.values())} raw records"
    )

    return StatsResponse(
        timestamp=datetime.utcnow(),
        canonical_counts=canonical_counts,
        raw_counts_by_source=raw_counts_by_source,
        events_by_state=events_by_state,
        pending_changes=pending_changes,
        unlinked_raw_records=unlinked,
        recent_runs=recent_runs,
        last_sync_success=last_success,
        last_sync_failure=last_failure,
        request_id=request_id
    )
