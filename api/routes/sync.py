"""
Sync job and deduplication endpoints
"""

from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends, Response, status

from api.dependencies import get_orchestrator
from ingestion.orchestrator import SyncOrchestrator
from schemas.api import DedupeRequest, SyncJobResponse, SyncRequest, SyncStatusResponse, SyncTriggerResponse

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Sync"])


@router.post("/sync", response_model=SyncTriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    response: Response,
    body: Optional[SyncRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """
    Start a sync job in the background.

    Returns 202 with the new job, or 200 with the job already running
    (only one job runs at a time).
    """
    body = body or SyncRequest()
    snapshot, started = await orchestrator.start_sync(
        cities=body.cities,
        sources=body.sources,
        enrich_after=body.enrich_after,
        dedupe_after=body.dedupe_after,
        requested_by=body.requested_by or "api",
    )
    if not started:
        response.status_code = status.HTTP_200_OK
    return SyncTriggerResponse(started=started, job=SyncJobResponse(**snapshot))


@router.get("/sync/status", response_model=SyncStatusResponse)
async def sync_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    current = await orchestrator.get_status()
    if current.get("status") == "idle":
        last = current.get("last_job")
        return SyncStatusResponse(status="idle", job=SyncJobResponse(**last) if last else None)
    return SyncStatusResponse(status=current["status"], job=SyncJobResponse(**current))


@router.get("/sync/jobs/{job_id}", response_model=SyncJobResponse)
async def get_sync_job(job_id: int, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return SyncJobResponse(**await orchestrator.get_job(job_id))


@router.post("/dedupe", response_model=Dict[str, Any])
async def run_dedupe(
    body: Optional[DedupeRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    """Run deduplication outside a sync job"""
    entity_types = body.entity_types if body is not None else None
    results = await orchestrator.run_dedupe(entity_types)
    logger.info(f"Manual dedupe finished: {results}")
    return results
