"""
Publish State Machine - lifecycle of canonical events.

Legal edges are listed in TRANSITIONS; anything else raises
InvalidTransitionError and leaves the stored state untouched. Entering
READY_TO_PUBLISH or PUBLISHED additionally requires the event to pass
publish validation. Every transition appends a StateTransition row.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import (
    InvalidTransitionError,
    PublishValidationError,
    RecordNotFoundError,
    ReconciliationError,
)
from models.base import EntityType, EventState, TERMINAL_STATES
from models.canonical import Event
from models.state_transition import StateTransition
from reconciliation.linker import Linker
from reconciliation.normalizer import normalize_text

logger = logging.getLogger(__name__)

EXPIRY_ACTOR = "system:expiry"

TRANSITIONS: Dict[EventState, frozenset] = {
    EventState.MANUAL_DRAFT: frozenset({
        EventState.APPROVED_PENDING_DETAILS, EventState.REJECTED, EventState.CANCELED,
    }),
    EventState.SCRAPED_DRAFT: frozenset({
        EventState.APPROVED_PENDING_DETAILS, EventState.REJECTED, EventState.CANCELED,
    }),
    EventState.APPROVED_PENDING_DETAILS: frozenset({
        EventState.READY_TO_PUBLISH, EventState.REJECTED, EventState.CANCELED,
    }),
    EventState.READY_TO_PUBLISH: frozenset({
        EventState.PUBLISHED, EventState.APPROVED_PENDING_DETAILS,
        EventState.REJECTED, EventState.CANCELED,
    }),
    EventState.PUBLISHED: frozenset({EventState.REJECTED, EventState.CANCELED}),
    EventState.REJECTED: frozenset(),
    EventState.CANCELED: frozenset(),
}

VALIDATED_STATES = frozenset({EventState.READY_TO_PUBLISH, EventState.PUBLISHED})

REQUIRED_FIELDS = ("title", "date", "venue_id")

# Fields the curator must rewrite rather than publish as scraped
CURATOR_FIELDS = ("title", "description")


def can_transition(current: EventState, target: EventState) -> bool:
    return EventState(target) in TRANSITIONS[EventState(current)]


def event_has_passed(event: Any, now: datetime) -> bool:
    """True once the event's last known moment is in the past."""
    if event.date is None:
        return False
    moment = event.end_time or event.start_time
    if moment is None:
        return event.date < now.date()
    ends = datetime.combine(event.date, moment)
    if event.end_time is not None and event.start_time is not None and event.end_time < event.start_time:
        # Ends after midnight
        ends = datetime.combine(event.date + timedelta(days=1), event.end_time)
    return ends < now


class PublishWorkflow:
    """Validate and apply event lifecycle transitions."""

    def __init__(self, db_session: AsyncSession):
        self.db = db_session
        self.linker = Linker(db_session, EntityType.EVENT)

    async def _load_for_update(self, event_id: int) -> Event:
        result = await self.db.execute(
            select(Event).where(Event.id == event_id).with_for_update()
        )
        event = result.scalar_one_or_none()
        if event is None:
            raise RecordNotFoundError(
                f"Event {event_id} not found",
                context={"entity_type": "event", "record_id": event_id}
            )
        return event

    async def validate_for_publish(self, event: Event) -> Dict[str, str]:
        """
        Check required fields and that curator-owned fields were rewritten.

        Returns:
            Field name → reason for every failing field (empty when valid)
        """
        problems: Dict[str, str] = {}
        for field in REQUIRED_FIELDS:
            value = getattr(event, field)
            if value is None or (isinstance(value, str) and not value.strip()):
                problems[field] = "missing"

        raws = [
            r for r in await self.linker.linked_raws(event.id)
            if r.source != settings.CURATED_SOURCE
        ]
        for field in CURATOR_FIELDS:
            if field in problems:
                continue
            current = normalize_text(getattr(event, field))
            if not current:
                continue
            for raw in raws:
                scraped = normalize_text((raw.data or {}).get(field))
                if scraped and scraped == current:
                    problems[field] = f"unchanged from source {raw.source}"
                    break

        return problems

    async def transition(
        self,
        event_id: int,
        target: EventState,
        actor: str,
        reason: Optional[str] = None
    ) -> StateTransition:
        """
        Move an event to a new lifecycle state.

        Args:
            event_id: Canonical event id
            target: Requested state
            actor: Who requested the change (user name or system tag)
            reason: Optional free-text note stored in history

        Raises:
            RecordNotFoundError: Unknown event
            InvalidTransitionError: Edge not in the transition table
            PublishValidationError: Event not fit for a publish state
        """
        target = EventState(target)
        try:
            event = await self._load_for_update(event_id)
            current = EventState(event.state)

            if not can_transition(current, target):
                raise InvalidTransitionError(
                    current.value, target.value, context={"event_id": event_id}
                )

            if target in VALIDATED_STATES:
                problems = await self.validate_for_publish(event)
                if problems:
                    raise PublishValidationError(problems, context={"event_id": event_id})

            event.state = target
            event.updated_at = datetime.utcnow()
            entry = StateTransition(
                event_id=event.id,
                previous_state=current.value,
                new_state=target.value,
                actor=actor,
                reason=reason,
                created_at=datetime.utcnow(),
            )
            self.db.add(entry)
            await self.db.commit()

        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Event {event_id}: {current.value} → {target.value} by {actor}")
        return entry

    async def bulk_transition(
        self,
        event_ids: Iterable[int],
        target: EventState,
        actor: str,
        reason: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Transition many events; each succeeds or fails on its own.

        Returns:
            One result dict per event id with "ok" and either the new state
            or the error details
        """
        results = []
        for event_id in event_ids:
            try:
                entry = await self.transition(event_id, target, actor, reason=reason)
                results.append({"event_id": event_id, "ok": True, "state": entry.new_state})
            except ReconciliationError as e:
                results.append({
                    "event_id": event_id,
                    "ok": False,
                    "error_type": type(e).__name__,
                    "message": e.message,
                    "fields": getattr(e, "fields", None),
                })
        return results

    async def history(self, event_id: int) -> List[StateTransition]:
        result = await self.db.execute(
            select(StateTransition)
            .where(StateTransition.event_id == event_id)
            .order_by(StateTransition.created_at, StateTransition.id)
        )
        return list(result.scalars().all())

    def record_initial_state(self, event: Event, actor: str) -> None:
        """History entry for a newly created event (no previous state)."""
        self.db.add(StateTransition(
            event_id=event.id,
            previous_state=None,
            new_state=EventState(event.state).value,
            actor=actor,
            created_at=datetime.utcnow(),
        ))

    async def expire_past_events(self, now: Optional[datetime] = None) -> List[int]:
        """
        Reject every non-terminal event whose date/time has passed.

        Returns:
            Ids of the events moved to REJECTED
        """
        now = now or datetime.utcnow()
        result = await self.db.execute(
            select(Event.id, Event.date, Event.start_time, Event.end_time).where(
                Event.state.notin_(list(TERMINAL_STATES)),
                Event.date.isnot(None),
                Event.date <= now.date()
            )
        )
        expired = []
        for row in result.all():
            if not event_has_passed(row, now):
                continue
            try:
                await self.transition(row.id, EventState.REJECTED, EXPIRY_ACTOR, reason="event date passed")
                expired.append(row.id)
            except ReconciliationError as e:
                logger.warning(f"Expiry sweep could not reject event {row.id}: {e.message}")

        if expired:
            logger.info(f"Expiry sweep rejected {len(expired)} past event(s)")
        return expired
