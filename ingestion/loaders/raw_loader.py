"""
Load source records into raw_records with content-hash versioning (idempotency)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from core.exceptions import DatabaseError
from models.raw_record import RawRecord
from models.registry import get_mapping
from schemas.source import SourceRecord, compute_content_hash
import logging

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    # (raw record, tracked fields whose value changed) for every updated row
    changed: List[Tuple[RawRecord, List[str]]] = field(default_factory=list)

    @property
    def loaded(self) -> int:
        return self.inserted + self.updated + self.unchanged


def changed_fields(entity_type, old: Dict[str, Any], new: Dict[str, Any]) -> List[str]:
    """Tracked fields whose values differ between two data payloads"""
    return [
        name for name in get_mapping(entity_type).fields
        if (old or {}).get(name) != (new or {}).get(name)
    ]


class RawRecordLoader:
    """
    Upsert raw records keyed by (entity_type, source, source_id).

    Ensures:
    - No duplicate rows on repeated runs
    - Unchanged payloads only bump last_seen_at
    - Changed payloads bump version and report which tracked fields changed
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def load(self, records: List[SourceRecord]) -> LoadResult:
        """
        Load records in one transaction.

        Args:
            records: Validated records of any entity type

        Returns:
            LoadResult with insert/update/unchanged counts and the changed rows
        """
        result = LoadResult()
        if not records:
            return result

        now = datetime.utcnow()
        for record in records:
            content_hash = compute_content_hash(record.data)
            existing = await self.db.execute(
                select(RawRecord).where(
                    RawRecord.entity_type == record.entity_type,
                    RawRecord.source == record.source,
                    RawRecord.source_id == record.source_id
                )
            )
            raw = existing.scalar_one_or_none()

            if raw is None:
                self.db.add(RawRecord(
                    entity_type=record.entity_type,
                    source=record.source,
                    source_id=record.source_id,
                    label=record.label,
                    city=record.city,
                    data=record.data,
                    content_hash=content_hash,
                    version=1,
                    first_seen_at=now,
                    last_seen_at=now,
                ))
                result.inserted += 1
                continue

            raw.last_seen_at = now
            if raw.content_hash == content_hash:
                result.unchanged += 1
                continue

            fields = changed_fields(record.entity_type, raw.data, record.data)
            raw.data = record.data
            raw.label = record.label
            raw.city = record.city
            raw.content_hash = content_hash
            raw.version = (raw.version or 1) + 1
            result.updated += 1
            if fields:
                result.changed.append((raw, fields))

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatabaseError(
                "Failed to upsert raw records",
                context={"operation": "UPSERT", "table_name": "raw_records", "record_count": len(records)},
                original_exception=e
            )

        logger.info(
            f"Loaded {result.loaded} raw records: inserted={result.inserted}, "
            f"updated={result.updated}, unchanged={result.unchanged}"
        )
        return result
