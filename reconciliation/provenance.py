"""
Provenance Unifier - folds raw record values into canonical records.

Every canonical field carries a source tag. Fields tagged with the curated
source are never overwritten automatically: a differing re-scrape value is
flagged on the raw record for review instead, and only an explicit
apply-changes writes it through.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import RecordNotFoundError, UnknownFieldError
from models.base import EntityType
from models.canonical import Event, event_artists
from models.raw_record import RawRecord
from models.registry import get_mapping, to_column_value, to_json_value
from reconciliation.linker import Linker
from schemas.provenance import FieldProvenance, load_provenance
from schemas.source import compute_content_hash

logger = logging.getLogger(__name__)


class ProvenanceUnifier:
    """
    Merge raw values into canonical records under field-level ownership.

    Pipeline-facing methods (on_link, on_rescrape) and apply_manual_edit never
    commit; apply_changes, dismiss_changes and delete_canonical each run as a
    single transaction and commit.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        entity_type: EntityType,
        curated_source: Optional[str] = None
    ):
        self.db = db_session
        self.entity_type = EntityType(entity_type)
        self.mapping = get_mapping(self.entity_type)
        self.linker = Linker(db_session, self.entity_type)
        self.curated_source = curated_source or settings.CURATED_SOURCE

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def provenance(self, canonical) -> FieldProvenance:
        return load_provenance(self.entity_type, canonical.field_provenance)

    def _editable_fields(self) -> List[str]:
        fields = list(self.mapping.fields)
        if self.entity_type == EntityType.EVENT:
            fields.append("venue_id")
        return fields

    def _check_fields(self, fields: Iterable[str], allowed: Optional[Iterable[str]] = None) -> List[str]:
        fields = list(fields)
        allowed = list(allowed) if allowed is not None else self._editable_fields()
        unknown = [f for f in fields if f not in allowed]
        if unknown:
            raise UnknownFieldError(
                f"Unknown {self.entity_type.value} fields: {', '.join(unknown)}",
                context={"entity_type": self.entity_type.value, "fields": unknown}
            )
        return fields

    def _write(self, canonical, prov: FieldProvenance, field: str, value: Any, source: str) -> None:
        setattr(canonical, field, to_column_value(field, value))
        prov.set_tag(field, source)

    def _save(self, canonical, prov: FieldProvenance) -> None:
        # JSON columns only persist on reassignment
        canonical.field_provenance = prov.to_json()
        canonical.updated_at = datetime.utcnow()

    async def get_canonical(self, canonical_id: int):
        canonical = await self.db.get(self.mapping.canonical, canonical_id)
        if canonical is None:
            raise RecordNotFoundError(
                f"{self.entity_type.value} {canonical_id} not found",
                context={"entity_type": self.entity_type.value, "record_id": canonical_id}
            )
        return canonical

    async def get_raw(self, raw_id: int) -> RawRecord:
        raw = await self.db.get(RawRecord, raw_id)
        if raw is None or raw.entity_type != self.entity_type:
            raise RecordNotFoundError(
                f"{self.entity_type.value} raw record {raw_id} not found",
                context={"entity_type": self.entity_type.value, "record_id": raw_id}
            )
        return raw

    # ------------------------------------------------------------------
    # Pipeline operations
    # ------------------------------------------------------------------

    def on_link(self, raw: RawRecord, canonical, is_primary: bool) -> List[str]:
        """
        Fold a newly linked raw record into its canonical record.

        The primary source copies every non-null field; a secondary source
        only fills fields that are still empty.

        Returns:
            Names of fields written
        """
        prov = self.provenance(canonical)
        written = []
        for field in self.mapping.fields:
            value = (raw.data or {}).get(field)
            if value is None or value == "":
                continue
            if prov.tag(field) == self.curated_source:
                continue
            if not is_primary and getattr(canonical, field) is not None:
                continue
            self._write(canonical, prov, field, value, raw.source)
            written.append(field)

        self._save(canonical, prov)
        return written

    async def on_rescrape(self, raw: RawRecord, canonical, changed_fields: Iterable[str]) -> Dict[str, List[str]]:
        """
        Apply or flag the fields a re-scrape changed.

        For each changed field whose new value differs from the canonical
        value: curated fields are flagged on the raw record with
        {field: {"old": canonical_value, "new": raw_value}}; any other owner
        is overwritten and retagged to this source. A value that disappeared
        from the source never blanks a canonical field.

        Returns:
            {"applied": [...], "flagged": [...]}
        """
        prov = self.provenance(canonical)
        changes = dict(raw.changes or {})
        applied, flagged = [], []

        for field in changed_fields:
            if field not in self.mapping.fields:
                continue
            new_value = (raw.data or {}).get(field)
            current = to_json_value(field, getattr(canonical, field))

            if new_value is None or new_value == "" or new_value == current:
                changes.pop(field, None)
                continue

            if prov.tag(field) == self.curated_source:
                changes[field] = {"old": current, "new": new_value}
                flagged.append(field)
            else:
                self._write(canonical, prov, field, new_value, raw.source)
                changes.pop(field, None)
                applied.append(field)

        if flagged and raw.dismissed and settings.RESURFACE_DISMISSED_CHANGES:
            raw.dismissed = False

        raw.changes = changes or None
        raw.has_changes = bool(changes)
        if not changes:
            raw.dismissed = False

        if applied:
            self._save(canonical, prov)
        await self.db.flush()
        await self.refresh_pending(canonical)

        if flagged:
            logger.info(
                f"{self.entity_type.value} {canonical.id}: curated fields changed by "
                f"{raw.source}:{raw.source_id} flagged for review: {', '.join(flagged)}"
            )
        return {"applied": applied, "flagged": flagged}

    async def refresh_pending(self, canonical) -> bool:
        """Recompute has_pending_changes from undismissed diffs of linked raws."""
        raws = await self.linker.linked_raws(canonical.id)
        pending = any(r.has_changes and not r.dismissed for r in raws)
        canonical.has_pending_changes = pending
        return pending

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def apply_changes(self, raw_id: int, fields: Optional[Iterable[str]] = None):
        """
        Write a raw record's values into its canonical record.

        Admin-directed, so curated fields may be overwritten. Applied fields
        are retagged to the raw's source and removed from its diff. Fields the
        raw holds no value for are left untouched.

        Args:
            raw_id: Raw record whose values are applied
            fields: Field names to apply; defaults to every field in the diff

        Returns:
            The updated canonical record
        """
        try:
            raw = await self.get_raw(raw_id)
            link = await self.linker.get_link(raw.id)
            if link is None:
                raise RecordNotFoundError(
                    f"Raw record {raw_id} is not linked",
                    context={"entity_type": self.entity_type.value, "record_id": raw_id}
                )
            canonical = await self.get_canonical(link.canonical_id)

            changes = dict(raw.changes or {})
            # Only fields a source can supply; venue_id is resolved, never scraped
            fields = self._check_fields(
                fields if fields is not None else changes.keys(), allowed=self.mapping.fields
            )

            prov = self.provenance(canonical)
            applied = []
            for field in fields:
                value = (raw.data or {}).get(field)
                if value is None:
                    continue
                self._write(canonical, prov, field, value, raw.source)
                changes.pop(field, None)
                applied.append(field)
            self._save(canonical, prov)

            raw.changes = changes or None
            raw.has_changes = bool(changes)
            if not changes:
                raw.dismissed = False
            link.last_synced_at = datetime.utcnow()

            await self.db.flush()
            await self.refresh_pending(canonical)
            await self.db.commit()

        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Applied {len(applied)} field(s) from {raw.source}:{raw.source_id} "
            f"to {self.entity_type.value} {canonical.id}: {', '.join(applied)}"
        )
        return canonical

    async def dismiss_changes(self, raw_id: int) -> RawRecord:
        """
        Hide a raw record's diff from the review queue.

        has_changes and the diff itself are kept.
        """
        raw = await self.get_raw(raw_id)
        raw.dismissed = True
        await self.db.flush()

        link = await self.linker.get_link(raw.id)
        if link is not None:
            canonical = await self.get_canonical(link.canonical_id)
            await self.refresh_pending(canonical)

        await self.db.commit()
        logger.info(f"Dismissed changes on {self.entity_type.value} raw {raw_id}")
        return raw

    async def delete_canonical(self, canonical_id: int) -> Dict[str, Any]:
        """
        Delete a canonical record in one transaction.

        Source raws lose their link (and any pending diff) and are matched
        again on the next sync. The record's curated raw is removed with it.
        Events pointing at a deleted venue keep their venue_name but lose
        venue_id; lineup rows of deleted events or artists are dropped.
        State history of a deleted event is kept.

        Returns:
            Released raw record ids and the number of references cleared
        """
        try:
            canonical = await self.get_canonical(canonical_id)
            raws = await self.linker.linked_raws(canonical_id)
            await self.linker.delete_for(canonical_id)

            released = []
            for raw in raws:
                if raw.source == self.curated_source:
                    await self.db.delete(raw)
                    continue
                raw.has_changes = False
                raw.changes = None
                raw.dismissed = False
                released.append(raw.id)

            references = 0
            if self.entity_type == EntityType.VENUE:
                events = (await self.db.execute(
                    select(Event).where(Event.venue_id == canonical_id)
                )).scalars().all()
                for event in events:
                    prov = load_provenance(EntityType.EVENT, event.field_provenance)
                    prov.set_tag("venue_id", None)
                    event.venue_id = None
                    event.field_provenance = prov.to_json()
                    references += 1
            else:
                column = event_artists.c.event_id if self.entity_type == EntityType.EVENT else event_artists.c.artist_id
                result = await self.db.execute(delete(event_artists).where(column == canonical_id))
                references = result.rowcount or 0

            await self.db.delete(canonical)
            await self.db.commit()

        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Deleted {self.entity_type.value} {canonical_id}: released {len(released)} raw record(s), "
            f"cleared {references} reference(s)"
        )
        return {"deleted_id": canonical_id, "released_raw_record_ids": released, "references_cleared": references}

    async def apply_manual_edit(self, canonical, values: Dict[str, Any], created: bool = False):
        """
        Write curator edits and mark each edited field curated.

        Upserts the synthetic curated raw record and its link so later
        re-scrapes of these fields are flagged rather than applied. Values are
        JSON-safe (dates as ISO strings).

        Args:
            canonical: Canonical record (may be new and unflushed)
            values: Field → value of the edit
            created: True when the canonical record is being created manually;
                the curated link then becomes primary
        """
        self._check_fields(values.keys())
        prov = self.provenance(canonical)
        for field, value in values.items():
            self._write(canonical, prov, field, value, self.curated_source)
        self._save(canonical, prov)

        if canonical.id is None:
            self.db.add(canonical)
        await self.db.flush()

        raw = await self._upsert_curated_raw(canonical, prov)
        link = await self.linker.get_link(raw.id)
        if link is None:
            await self.linker.create_link(raw, canonical.id, confidence=1.0, is_primary=created or None)
        else:
            link.last_synced_at = datetime.utcnow()

        await self.db.flush()
        return canonical

    async def _upsert_curated_raw(self, canonical, prov: FieldProvenance) -> RawRecord:
        source_id = f"canonical-{canonical.id}"
        data = {
            field: to_json_value(field, getattr(canonical, field))
            for field in prov.fields_owned_by(self.curated_source)
            if field in self.mapping.fields
        }
        label = getattr(canonical, self.mapping.label_field) or ""

        result = await self.db.execute(
            select(RawRecord).where(
                RawRecord.entity_type == self.entity_type,
                RawRecord.source == self.curated_source,
                RawRecord.source_id == source_id
            )
        )
        raw = result.scalar_one_or_none()
        content_hash = compute_content_hash(data)
        now = datetime.utcnow()

        if raw is None:
            raw = RawRecord(
                entity_type=self.entity_type,
                source=self.curated_source,
                source_id=source_id,
                label=label,
                city=getattr(canonical, "city", None),
                data=data,
                content_hash=content_hash,
                version=1,
                first_seen_at=now,
                last_seen_at=now,
            )
            self.db.add(raw)
        elif raw.content_hash != content_hash:
            raw.data = data
            raw.label = label
            raw.content_hash = content_hash
            raw.version = (raw.version or 1) + 1
            raw.last_seen_at = now

        await self.db.flush()
        return raw

