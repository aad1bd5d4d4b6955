"""
Event publish workflow endpoints
"""

from typing import List
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from core.exceptions import RecordNotFoundError
from models.canonical import Event
from reconciliation.publishing import PublishWorkflow
from schemas.api import (
    BulkTransitionRequest,
    BulkTransitionResult,
    TransitionRequest,
    TransitionResponse,
    ValidationReport,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/events", tags=["Publish workflow"])


@router.post("/{event_id}/transition", response_model=TransitionResponse)
async def transition_event(event_id: int, body: TransitionRequest, db: AsyncSession = Depends(get_db)):
    """
    Move an event to another lifecycle state.

    Illegal edges return 409; entering a publish state with missing or
    unreviewed fields returns 422 with the failing fields.
    """
    return await PublishWorkflow(db).transition(
        event_id, body.target_state, body.actor, reason=body.reason
    )


@router.post("/transition", response_model=List[BulkTransitionResult])
async def bulk_transition(body: BulkTransitionRequest, db: AsyncSession = Depends(get_db)):
    """Transition many events; each succeeds or fails independently"""
    results = await PublishWorkflow(db).bulk_transition(
        body.event_ids, body.target_state, body.actor, reason=body.reason
    )
    failed = sum(1 for r in results if not r["ok"])
    logger.info(
        f"Bulk transition to {body.target_state.value} by {body.actor}: "
        f"{len(results) - failed} ok, {failed} failed"
    )
    return results


@router.get("/{event_id}/history", response_model=List[TransitionResponse])
async def event_history(event_id: int, db: AsyncSession = Depends(get_db)):
    if await db.get(Event, event_id) is None:
        raise RecordNotFoundError(
            f"event {event_id} not found",
            context={"entity_type": "event", "record_id": event_id}
        )
    return await PublishWorkflow(db).history(event_id)


@router.get("/{event_id}/validation", response_model=ValidationReport)
async def validate_event(event_id: int, db: AsyncSession = Depends(get_db)):
    """Dry-run of the publish checks"""
    event = await db.get(Event, event_id)
    if event is None:
        raise RecordNotFoundError(
            f"event {event_id} not found",
            context={"entity_type": "event", "record_id": event_id}
        )
    problems = await PublishWorkflow(db).validate_for_publish(event)
    return ValidationReport(event_id=event_id, valid=not problems, problems=problems)


@router.post("/expire", response_model=List[int])
async def expire_past_events(db: AsyncSession = Depends(get_db)):
    """Reject every open event whose date has passed; returns their ids"""
    return await PublishWorkflow(db).expire_past_events()
