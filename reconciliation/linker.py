"""
Linker - persists raw ↔ canonical associations.

Invariants:
- A raw record has at most one link (unique raw_record_id)
- A canonical record has exactly one primary link once it has any link
"""

from datetime import datetime
from typing import List, Optional
import logging

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import DuplicateLinkError, RecordNotFoundError
from models.base import EntityType
from models.raw_record import RawRecord
from models.registry import get_mapping

logger = logging.getLogger(__name__)


class Linker:
    """
    Create, promote, repoint and remove links for one entity type.

    The Linker never commits; callers own the transaction.
    """

    def __init__(self, db_session: AsyncSession, entity_type: EntityType):
        self.db = db_session
        self.entity_type = EntityType(entity_type)
        self.mapping = get_mapping(self.entity_type)
        self.Link = self.mapping.link

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_link(self, raw_record_id: int):
        result = await self.db.execute(
            select(self.Link).where(self.Link.raw_record_id == raw_record_id)
        )
        return result.scalar_one_or_none()

    async def links_for(self, canonical_id: int) -> List:
        result = await self.db.execute(
            select(self.Link)
            .where(self.mapping.link_column() == canonical_id)
            .order_by(self.Link.id)
        )
        return list(result.scalars().all())

    async def primary_link(self, canonical_id: int):
        result = await self.db.execute(
            select(self.Link).where(
                self.mapping.link_column() == canonical_id,
                self.Link.is_primary.is_(True)
            )
        )
        return result.scalar_one_or_none()

    async def linked_raws(self, canonical_id: int) -> List[RawRecord]:
        result = await self.db.execute(
            select(RawRecord)
            .join(self.Link, self.Link.raw_record_id == RawRecord.id)
            .where(self.mapping.link_column() == canonical_id)
            .order_by(self.Link.id)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_link(
        self,
        raw: RawRecord,
        canonical_id: int,
        confidence: float,
        is_primary: Optional[bool] = None
    ):
        """
        Create a link, refusing to relink an already linked raw record.

        Args:
            raw: Raw record to link
            canonical_id: Target canonical record id
            confidence: Match confidence in [0, 1]
            is_primary: Force primary on/off; by default the first link of a
                canonical record becomes primary

        Raises:
            DuplicateLinkError: The raw record already has a link
        """
        existing = await self.get_link(raw.id)
        if existing is not None:
            raise DuplicateLinkError(
                f"Raw record {raw.id} is already linked",
                context={
                    "entity_type": self.entity_type.value,
                    "raw_record_id": raw.id,
                    "canonical_id": existing.canonical_id,
                }
            )

        if is_primary is None:
            is_primary = await self.primary_link(canonical_id) is None
        elif is_primary:
            await self._demote(canonical_id)

        link = self.Link(
            raw_record_id=raw.id,
            confidence=confidence,
            is_primary=is_primary,
            last_synced_at=datetime.utcnow(),
        )
        link.canonical_id = canonical_id

        self.db.add(link)
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise DuplicateLinkError(
                f"Raw record {raw.id} was linked concurrently",
                context={
                    "entity_type": self.entity_type.value,
                    "raw_record_id": raw.id,
                    "canonical_id": canonical_id,
                },
                original_exception=e
            )

        logger.debug(
            f"Linked {self.entity_type.value} raw {raw.id} ({raw.source}) → {canonical_id} "
            f"confidence={confidence} primary={is_primary}"
        )
        return link

    async def link(
        self,
        raw: RawRecord,
        canonical_id: int,
        confidence: float,
        is_primary: Optional[bool] = None
    ):
        """
        Idempotent link: returns the existing link untouched if there is one.

        Returns:
            Tuple of (link, created)
        """
        try:
            return await self.create_link(raw, canonical_id, confidence, is_primary), True
        except DuplicateLinkError as e:
            if e.original_exception is not None:
                raise
            existing = await self.get_link(raw.id)
            logger.debug(f"Raw {raw.id} already linked to {existing.canonical_id}; no-op")
            return existing, False

    async def set_primary(self, link) -> None:
        """Promote a link to primary, demoting the previous primary first."""
        if link.is_primary:
            return
        await self._demote(link.canonical_id)
        link.is_primary = True
        await self.db.flush()

    async def _demote(self, canonical_id: int) -> None:
        await self.db.execute(
            update(self.Link)
            .where(
                self.mapping.link_column() == canonical_id,
                self.Link.is_primary.is_(True)
            )
            .values(is_primary=False)
            .execution_options(synchronize_session="fetch")
        )
        await self.db.flush()

    async def touch(self, raw_record_id: int) -> None:
        await self.db.execute(
            update(self.Link)
            .where(self.Link.raw_record_id == raw_record_id)
            .values(last_synced_at=datetime.utcnow())
        )

    async def repoint(self, from_canonical_id: int, to_canonical_id: int) -> int:
        """
        Move every link of one canonical record onto another.

        The moved links lose primary status; the target keeps its own primary
        (or the earliest moved link becomes primary if it had none).

        Returns:
            Number of links moved
        """
        target_has_primary = await self.primary_link(to_canonical_id) is not None
        moved = await self.db.execute(
            update(self.Link)
            .where(self.mapping.link_column() == from_canonical_id)
            .values({self.mapping.link_key: to_canonical_id, "is_primary": False})
            .execution_options(synchronize_session="fetch")
        )
        await self.db.flush()

        if not target_has_primary:
            links = await self.links_for(to_canonical_id)
            if links:
                links[0].is_primary = True
                await self.db.flush()

        return moved.rowcount or 0

    async def unlink(self, raw_record_id: int) -> bool:
        """
        Remove a raw record's link; a primary is handed to the oldest remaining link.
        """
        link = await self.get_link(raw_record_id)
        if link is None:
            return False

        canonical_id = link.canonical_id
        was_primary = link.is_primary
        await self.db.delete(link)
        await self.db.flush()

        if was_primary:
            remaining = await self.links_for(canonical_id)
            if remaining:
                remaining[0].is_primary = True
                await self.db.flush()
        return True

    async def manual_link(self, canonical_id: int, source: str, source_id: str):
        """
        Admin link of a known raw record (by source key) to a canonical record.

        Raises:
            RecordNotFoundError: No raw record with that source key
            DuplicateLinkError: The raw record is already linked
        """
        result = await self.db.execute(
            select(RawRecord).where(
                RawRecord.entity_type == self.entity_type,
                RawRecord.source == source,
                RawRecord.source_id == source_id
            )
        )
        raw = result.scalar_one_or_none()
        if raw is None:
            raise RecordNotFoundError(
                f"No {self.entity_type.value} raw record for {source}:{source_id}",
                context={"entity_type": self.entity_type.value, "source": source, "source_id": source_id}
            )
        return await self.create_link(raw, canonical_id, confidence=1.0), raw

    async def count_links(self, canonical_id: int) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(self.Link).where(self.mapping.link_column() == canonical_id)
        )
        return result.scalar() or 0

    async def delete_for(self, canonical_id: int) -> None:
        await self.db.execute(
            delete(self.Link).where(self.mapping.link_column() == canonical_id)
        )
