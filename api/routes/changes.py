"""
Raw records and the review queue of source changes to curated fields
"""

import math
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy import and_, func, not_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from core.exceptions import RecordNotFoundError
from models.base import EntityType
from models.raw_record import RawRecord
from models.registry import get_mapping
from reconciliation.linker import Linker
from reconciliation.provenance import ProvenanceUnifier
from schemas.api import ApplyChangesRequest, PaginationMetadata, RawRecordResponse

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Review"])


async def raw_response(db: AsyncSession, raw: RawRecord) -> RawRecordResponse:
    link = await Linker(db, raw.entity_type).get_link(raw.id)
    response = RawRecordResponse.model_validate(raw)
    response.canonical_id = link.canonical_id if link is not None else None
    return response


async def get_raw_or_404(db: AsyncSession, raw_id: int) -> RawRecord:
    raw = await db.get(RawRecord, raw_id)
    if raw is None:
        raise RecordNotFoundError(
            f"Raw record {raw_id} not found",
            context={"entity_type": "raw_record", "record_id": raw_id}
        )
    return raw


def has_link(entity_type: EntityType):
    Link = get_mapping(entity_type).link
    return and_(
        RawRecord.entity_type == entity_type,
        select(Link.id).where(Link.raw_record_id == RawRecord.id).exists(),
    )


async def raw_page(
    db: AsyncSession,
    filters: List[Any],
    filters_applied: Dict[str, Any],
    page: int,
    page_size: int,
) -> Dict[str, Any]:
    count_query = select(func.count()).select_from(RawRecord)
    query = select(RawRecord)
    if filters:
        count_query = count_query.where(and_(*filters))
        query = query.where(and_(*filters))

    total_items = (await db.execute(count_query)).scalar() or 0
    total_pages = math.ceil(total_items / page_size) if total_items > 0 else 0

    result = await db.execute(
        query
        .order_by(RawRecord.last_seen_at.desc(), RawRecord.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = [
        (await raw_response(db, raw)).model_dump(mode="json")
        for raw in result.scalars().all()
    ]

    return {
        "items": items,
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


@router.get("/changes", response_model=Dict[str, Any])
async def list_pending_changes(
    entity_type: Optional[EntityType] = Query(None, description="Only this entity type"),
    source: Optional[str] = Query(None, description="Only this source"),
    include_dismissed: bool = Query(False, description="Include dismissed diffs"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db)
):
    """
    Raw records whose re-scrape changed fields the canonical record does not
    take automatically (curated fields, or fields owned by another source).
    """
    filters = [RawRecord.has_changes.is_(True)]
    filters_applied: Dict[str, Any] = {"include_dismissed": include_dismissed}
    if not include_dismissed:
        filters.append(RawRecord.dismissed.is_(False))
    if entity_type is not None:
        filters.append(RawRecord.entity_type == entity_type)
        filters_applied["entity_type"] = entity_type.value
    if source:
        filters.append(RawRecord.source == source)
        filters_applied["source"] = source

    return await raw_page(db, filters, filters_applied, page, page_size)


@router.get("/raw-records", response_model=Dict[str, Any])
async def list_raw_records(
    entity_type: Optional[EntityType] = Query(None, description="Only this entity type"),
    source: Optional[str] = Query(None, description="Only this source"),
    city: Optional[str] = Query(None, description="Filter by city"),
    linked: Optional[bool] = Query(None, description="Only linked (true) or unmatched (false) records"),
    search: Optional[str] = Query(None, description="Search in the title/name"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db)
):
    """Browse scraped observations, e.g. the unmatched records of one source"""
    filters = []
    filters_applied: Dict[str, Any] = {}
    if entity_type is not None:
        filters.append(RawRecord.entity_type == entity_type)
        filters_applied["entity_type"] = entity_type.value
    if source:
        filters.append(RawRecord.source == source)
        filters_applied["source"] = source
    if city:
        filters.append(func.lower(RawRecord.city) == city.lower())
        filters_applied["city"] = city
    if search:
        filters.append(RawRecord.label.ilike(f"%{search}%"))
        filters_applied["search"] = search
    if linked is not None:
        types = [entity_type] if entity_type is not None else list(EntityType)
        clause = or_(*[has_link(t) for t in types])
        filters.append(clause if linked else not_(clause))
        filters_applied["linked"] = linked

    return await raw_page(db, filters, filters_applied, page, page_size)


@router.get("/raw-records/{raw_id}", response_model=RawRecordResponse)
async def get_raw_record(raw_id: int, db: AsyncSession = Depends(get_db)):
    return await raw_response(db, await get_raw_or_404(db, raw_id))


@router.post("/changes/{raw_id}/apply", response_model=RawRecordResponse)
async def apply_changes(
    raw_id: int,
    body: Optional[ApplyChangesRequest] = None,
    db: AsyncSession = Depends(get_db)
):
    """Write the raw record's values into its canonical record (all or selected fields)"""
    raw = await get_raw_or_404(db, raw_id)
    entity_type = raw.entity_type
    fields = body.fields if body is not None else None
    await ProvenanceUnifier(db, entity_type).apply_changes(raw_id, fields)

    raw = await db.get(RawRecord, raw_id)
    return await raw_response(db, raw)


@router.post("/changes/{raw_id}/dismiss", response_model=RawRecordResponse)
async def dismiss_changes(raw_id: int, db: AsyncSession = Depends(get_db)):
    """Hide the diff from the review queue without applying it"""
    raw = await get_raw_or_404(db, raw_id)
    raw = await ProvenanceUnifier(db, raw.entity_type).dismiss_changes(raw_id)
    return await raw_response(db, raw)
