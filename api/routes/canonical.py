"""
Canonical record endpoints: list, detail, manual create, curator edit and links
"""

import math
from typing import Any, Dict, List, Optional, Type
import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from core.exceptions import RecordNotFoundError
from models.base import EntityType, EventState
from models.canonical import Venue, event_artists
from models.raw_record import RawRecord
from models.registry import get_mapping
from reconciliation.linker import Linker
from reconciliation.provenance import ProvenanceUnifier
from reconciliation.publishing import PublishWorkflow
from schemas.api import ManualLinkRequest, PaginationMetadata
from schemas.canonical import (
    ArtistCreate, ArtistDetail, ArtistResponse, ArtistUpdate,
    EventCreate, EventDetail, EventResponse, EventUpdate,
    LinkInfo,
    VenueCreate, VenueDetail, VenueResponse, VenueUpdate,
)

logger = logging.getLogger(__name__)


async def load_links(db: AsyncSession, entity_type: EntityType, canonical_id: int) -> List[LinkInfo]:
    mapping = get_mapping(entity_type)
    Link = mapping.link
    result = await db.execute(
        select(Link, RawRecord)
        .join(RawRecord, RawRecord.id == Link.raw_record_id)
        .where(mapping.link_column() == canonical_id)
        .order_by(Link.id)
    )
    return [
        LinkInfo(
            raw_record_id=raw.id,
            source=raw.source,
            source_id=raw.source_id,
            confidence=link.confidence,
            is_primary=link.is_primary,
            last_synced_at=link.last_synced_at,
            version=raw.version,
            has_changes=raw.has_changes,
            dismissed=raw.dismissed,
            changes=raw.changes,
        )
        for link, raw in result.all()
    ]


def build_router(
    entity_type: EntityType,
    response_model: Type[BaseModel],
    detail_model: Type[BaseModel],
    create_model: Type[BaseModel],
    update_model: Type[BaseModel],
) -> APIRouter:
    """Routes for one canonical entity type under /{entity_type}s"""
    mapping = get_mapping(entity_type)
    Model = mapping.canonical
    label = mapping.label_field
    name = entity_type.value
    router = APIRouter(prefix=f"/{name}s", tags=[f"{name.capitalize()}s"])

    async def get_or_404(db: AsyncSession, record_id: int):
        record = await db.get(Model, record_id)
        if record is None:
            raise RecordNotFoundError(
                f"{name} {record_id} not found",
                context={"entity_type": name, "record_id": record_id}
            )
        return record

    async def detail(db: AsyncSession, record) -> BaseModel:
        extra: Dict[str, Any] = {"links": await load_links(db, entity_type, record.id)}
        if entity_type == EntityType.EVENT:
            result = await db.execute(
                select(event_artists.c.artist_id)
                .where(event_artists.c.event_id == record.id)
                .order_by(event_artists.c.artist_id)
            )
            extra["artist_ids"] = list(result.scalars().all())
        base = response_model.model_validate(record).model_dump()
        return detail_model(**base, **extra)

    async def check_venue(db: AsyncSession, values: Dict[str, Any]) -> None:
        venue_id = values.get("venue_id")
        if venue_id is not None and await db.get(Venue, venue_id) is None:
            raise RecordNotFoundError(
                f"venue {venue_id} not found",
                context={"entity_type": "venue", "record_id": venue_id}
            )

    @router.get("", response_model=Dict[str, Any])
    async def list_records(
        page: int = Query(1, ge=1, description="Page number"),
        page_size: int = Query(50, ge=1, le=500, description="Items per page"),
        city: Optional[str] = Query(None, description="Filter by city"),
        search: Optional[str] = Query(None, description="Search in the name/title"),
        has_pending_changes: Optional[bool] = Query(None, description="Only records awaiting review"),
        state: Optional[EventState] = Query(None, description="Event lifecycle state (events only)"),
        db: AsyncSession = Depends(get_db)
    ):
        filters = []
        filters_applied: Dict[str, Any] = {}
        if city and hasattr(Model, "city"):
            filters.append(func.lower(Model.city) == city.lower())
            filters_applied["city"] = city
        if search:
            filters.append(getattr(Model, label).ilike(f"%{search}%"))
            filters_applied["search"] = search
        if has_pending_changes is not None:
            filters.append(Model.has_pending_changes.is_(has_pending_changes))
            filters_applied["has_pending_changes"] = has_pending_changes
        if state is not None and entity_type == EntityType.EVENT:
            filters.append(Model.state == state)
            filters_applied["state"] = state.value

        count_query = select(func.count()).select_from(Model)
        query = select(Model)
        if filters:
            count_query = count_query.where(and_(*filters))
            query = query.where(and_(*filters))

        total_items = (await db.execute(count_query)).scalar() or 0
        total_pages = math.ceil(total_items / page_size) if total_items > 0 else 0
        if entity_type == EntityType.EVENT:
            query = query.order_by(Model.date.desc(), Model.id.desc())
        else:
            query = query.order_by(getattr(Model, label), Model.id)
        result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))

        return {
            "items": [response_model.model_validate(r).model_dump(mode="json") for r in result.scalars().all()],
            "pagination": PaginationMetadata(
                total_items=total_items,
                total_pages=total_pages,
                current_page=page,
                page_size=page_size,
                has_next=page < total_pages,
                has_previous=page > 1,
            ).model_dump(),
            "filters_applied": filters_applied,
        }

    @router.get("/{record_id}", response_model=detail_model)
    async def get_record(record_id: int, db: AsyncSession = Depends(get_db)):
        return await detail(db, await get_or_404(db, record_id))

    @router.post("", response_model=detail_model, status_code=status.HTTP_201_CREATED)
    async def create_record(
        body: create_model = Body(...),
        actor: str = Query("admin", description="Who creates the record"),
        db: AsyncSession = Depends(get_db)
    ):
        values = body.model_dump(mode="json", exclude_none=True)
        try:
            await check_venue(db, values)
            record = Model()
            if entity_type == EntityType.EVENT:
                record.state = EventState.MANUAL_DRAFT
            await ProvenanceUnifier(db, entity_type).apply_manual_edit(record, values, created=True)
            if entity_type == EntityType.EVENT:
                PublishWorkflow(db).record_initial_state(record, actor=actor)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(f"{actor} created {name} {record.id}")
        return await detail(db, record)

    @router.patch("/{record_id}", response_model=detail_model)
    async def update_record(
        record_id: int,
        body: update_model = Body(...),
        actor: str = Query("admin", description="Who edits the record"),
        db: AsyncSession = Depends(get_db)
    ):
        values = body.model_dump(mode="json", exclude_unset=True)
        if label in values and values[label] is None:
            raise HTTPException(status_code=422, detail=f"{label} cannot be cleared")
        try:
            record = await get_or_404(db, record_id)
            await check_venue(db, values)
            if values:
                await ProvenanceUnifier(db, entity_type).apply_manual_edit(record, values)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(f"{actor} edited {name} {record_id}: {', '.join(values) or 'nothing'}")
        return await detail(db, record)

    @router.delete("/{record_id}", response_model=Dict[str, Any])
    async def delete_record(
        record_id: int,
        actor: str = Query("admin", description="Who deletes the record"),
        db: AsyncSession = Depends(get_db)
    ):
        """Delete the record; its source raws are matched again on the next sync"""
        result = await ProvenanceUnifier(db, entity_type).delete_canonical(record_id)
        logger.info(f"{actor} deleted {name} {record_id}")
        return result

    @router.post("/{record_id}/links", response_model=detail_model, status_code=status.HTTP_201_CREATED)
    async def link_raw_record(
        record_id: int,
        body: ManualLinkRequest,
        db: AsyncSession = Depends(get_db)
    ):
        """Attach a raw record (by source key) to this canonical record"""
        try:
            record = await get_or_404(db, record_id)
            link, raw = await Linker(db, entity_type).manual_link(record.id, body.source, body.source_id)
            ProvenanceUnifier(db, entity_type).on_link(raw, record, link.is_primary)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return await detail(db, record)

    @router.post("/{record_id}/links/{raw_record_id}/primary", response_model=detail_model)
    async def make_primary(record_id: int, raw_record_id: int, db: AsyncSession = Depends(get_db)):
        try:
            record = await get_or_404(db, record_id)
            linker = Linker(db, entity_type)
            link = await linker.get_link(raw_record_id)
            if link is None or link.canonical_id != record.id:
                raise RecordNotFoundError(
                    f"Raw record {raw_record_id} is not linked to {name} {record_id}",
                    context={"entity_type": name, "record_id": record_id, "raw_record_id": raw_record_id}
                )
            await linker.set_primary(link)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return await detail(db, record)

    @router.delete("/{record_id}/links/{raw_record_id}", response_model=detail_model)
    async def unlink_raw_record(record_id: int, raw_record_id: int, db: AsyncSession = Depends(get_db)):
        """Detach a raw record; it is matched again on the next sync"""
        try:
            record = await get_or_404(db, record_id)
            linker = Linker(db, entity_type)
            link = await linker.get_link(raw_record_id)
            if link is None or link.canonical_id != record.id:
                raise RecordNotFoundError(
                    f"Raw record {raw_record_id} is not linked to {name} {record_id}",
                    context={"entity_type": name, "record_id": record_id, "raw_record_id": raw_record_id}
                )
            await linker.unlink(raw_record_id)
            await ProvenanceUnifier(db, entity_type).refresh_pending(record)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return await detail(db, record)

    return router


events_router = build_router(EntityType.EVENT, EventResponse, EventDetail, EventCreate, EventUpdate)
venues_router = build_router(EntityType.VENUE, VenueResponse, VenueDetail, VenueCreate, VenueUpdate)
artists_router = build_router(EntityType.ARTIST, ArtistResponse, ArtistDetail, ArtistCreate, ArtistUpdate)
