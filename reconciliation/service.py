"""
Match service - turns loaded raw records into linked canonical records.

For one entity type it:
1. Folds re-scrape diffs of already linked raws into their canonicals
2. Matches every unlinked raw against in-scope canonical candidates and
   either links it or creates a new canonical record from it
3. (events only) resolves venue names and artist lists to canonical ids

Each raw record is processed in its own transaction, so one bad record never
aborts the batch.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple
import logging

from sqlalchemy import select, insert, func
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from models.base import EntityType, EventState, TERMINAL_STATES
from models.canonical import Artist, Event, Venue, event_artists
from models.links import EventLink
from models.raw_record import RawRecord
from models.registry import get_mapping, to_json_value
from reconciliation.linker import Linker
from reconciliation.matcher import Matcher
from reconciliation.normalizer import normalize_text
from reconciliation.provenance import ProvenanceUnifier
from reconciliation.publishing import PublishWorkflow

logger = logging.getLogger(__name__)

SYNC_ACTOR = "system:sync"


@dataclass
class MatchStats:
    entity_type: EntityType
    processed: int = 0
    created: int = 0
    linked: int = 0
    unchanged: int = 0
    rescraped: int = 0
    flagged: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "processed": self.processed,
            "created": self.created,
            "linked": self.linked,
            "unchanged": self.unchanged,
            "rescraped": self.rescraped,
            "flagged": self.flagged,
            "failed": self.failed,
            "errors": self.errors[:50],
        }


class MatchService:
    """
    Match, link and unify raw records of one entity type.

    Candidate pools are loaded once per service and kept current as new
    canonicals are created; a rolled back record invalidates them.
    """

    def __init__(self, db_session: AsyncSession, entity_type: EntityType, matcher: Optional[Matcher] = None):
        self.db = db_session
        self.entity_type = EntityType(entity_type)
        self.mapping = get_mapping(self.entity_type)
        self.matcher = matcher or Matcher()
        self.linker = Linker(db_session, self.entity_type)
        self.unifier = ProvenanceUnifier(db_session, self.entity_type)
        self.workflow = PublishWorkflow(db_session) if self.entity_type == EntityType.EVENT else None

        self._pools: Optional[Dict[Tuple, List[Any]]] = None
        self._sources: Dict[int, Set[str]] = defaultdict(set)

    # ------------------------------------------------------------------
    # Candidate pools
    # ------------------------------------------------------------------

    def scope_key(self, record: Any) -> Optional[Tuple]:
        """
        Candidate scope of a raw data dict or canonical record.

        Venues: same city. Events: same date and city (no date, no
        candidates). Artists: unscoped.
        """
        def value(name):
            return record.get(name) if isinstance(record, dict) else getattr(record, name, None)

        if self.entity_type == EntityType.ARTIST:
            return ("*",)
        city = normalize_text(value("city"))
        if self.entity_type == EntityType.VENUE:
            return (city,)
        day = to_json_value("date", value("date"))
        if not day:
            return None
        return (day[:10], city)

    def _reset_pools(self) -> None:
        self._pools = None
        self._sources = defaultdict(set)

    async def _load_pools(self) -> Dict[Tuple, List[Any]]:
        if self._pools is not None:
            return self._pools

        Model = self.mapping.canonical
        pools: Dict[Tuple, List[Any]] = defaultdict(list)
        result = await self.db.execute(select(Model).order_by(Model.id))
        for canonical in result.scalars().all():
            key = self.scope_key(canonical)
            if key is not None:
                pools[key].append(canonical)

        link_column = self.mapping.link_column()
        rows = await self.db.execute(
            select(link_column, RawRecord.source)
            .join(RawRecord, RawRecord.id == self.mapping.link.raw_record_id)
        )
        sources = defaultdict(set)
        for canonical_id, source in rows.all():
            sources[canonical_id].add(source)

        self._pools = pools
        self._sources = sources
        return pools

    async def candidates(self, key: Optional[Tuple]) -> List[Any]:
        if key is None:
            return []
        pools = await self._load_pools()
        return list(pools.get(key, ()))

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    async def match_one(self, raw: RawRecord) -> str:
        """
        Link one raw record, creating its canonical record if nothing matches.

        Canonicals already linked from the raw's own source are never
        candidates: one source lists each real-world entity once.

        Returns:
            "created", "linked" or "unchanged" (already linked)
        """
        if await self.linker.get_link(raw.id) is not None:
            return "unchanged"

        data = raw.data or {}
        pool = await self.candidates(self.scope_key(data))
        excluded = [c.id for c in pool if raw.source in self._sources.get(c.id, ())]
        match = self.matcher.best_match(self.entity_type, data, pool, exclude_ids=excluded)

        if match is None:
            await self._create_canonical(raw)
            return "created"

        link, created = await self.linker.link(raw, match.canonical_id, match.confidence)
        if not created:
            return "unchanged"
        self.unifier.on_link(raw, match.canonical, link.is_primary)
        await self.db.flush()
        self._sources[match.canonical_id].add(raw.source)
        return "linked"

    async def _create_canonical(self, raw: RawRecord):
        Model = self.mapping.canonical
        canonical = Model()
        if self.entity_type == EntityType.EVENT:
            canonical.state = EventState.SCRAPED_DRAFT
        self.unifier.on_link(raw, canonical, is_primary=True)
        self.db.add(canonical)
        await self.db.flush()

        await self.linker.create_link(raw, canonical.id, confidence=1.0, is_primary=True)
        if self.workflow is not None:
            self.workflow.record_initial_state(canonical, actor=SYNC_ACTOR)
        await self.db.flush()

        pools = await self._load_pools()
        key = self.scope_key(canonical)
        if key is not None and canonical not in pools[key]:
            pools[key].append(canonical)
        self._sources[canonical.id].add(raw.source)

        logger.debug(f"Created {self.entity_type.value} {canonical.id} from {raw.source}:{raw.source_id}")
        return canonical

    async def unlinked_raw_ids(
        self,
        cities: Optional[Sequence[str]] = None,
        sources: Optional[Sequence[str]] = None
    ) -> List[int]:
        Link = self.mapping.link
        query = (
            select(RawRecord.id)
            .outerjoin(Link, Link.raw_record_id == RawRecord.id)
            .where(
                RawRecord.entity_type == self.entity_type,
                RawRecord.source != settings.CURATED_SOURCE,
                Link.id.is_(None)
            )
            .order_by(RawRecord.id)
        )
        if cities:
            query = query.where(func.lower(RawRecord.city).in_([c.lower() for c in cities]))
        if sources:
            query = query.where(RawRecord.source.in_(list(sources)))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def match_pending(
        self,
        cities: Optional[Sequence[str]] = None,
        sources: Optional[Sequence[str]] = None,
        stats: Optional[MatchStats] = None
    ) -> MatchStats:
        """Match every unlinked raw record, one transaction per record"""
        stats = stats or MatchStats(entity_type=self.entity_type)
        raw_ids = await self.unlinked_raw_ids(cities, sources)
        logger.info(f"Matching {len(raw_ids)} unlinked {self.entity_type.value} raw record(s)")

        for raw_id in raw_ids:
            stats.processed += 1
            try:
                raw = await self.db.get(RawRecord, raw_id)
                outcome = await self.match_one(raw)
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                self._reset_pools()
                stats.failed += 1
                error_detail = {
                    "phase": "match",
                    "raw_record_id": raw_id,
                    "error_type": type(e).__name__,
                    "error_message": str(e)[:500],
                }
                stats.errors.append(error_detail)
                logger.error(
                    f"Matching failed for {self.entity_type.value} raw {raw_id}: {e}",
                    extra={"error_context": error_detail}
                )
                continue

            if outcome == "created":
                stats.created += 1
            elif outcome == "linked":
                stats.linked += 1
            else:
                stats.unchanged += 1

        logger.info(
            f"{self.entity_type.value} matching complete: created={stats.created}, "
            f"linked={stats.linked}, failed={stats.failed}"
        )
        return stats

    # ------------------------------------------------------------------
    # Re-scrapes
    # ------------------------------------------------------------------

    async def apply_rescrapes(
        self,
        changed: Iterable[Tuple[int, List[str]]],
        stats: Optional[MatchStats] = None
    ) -> MatchStats:
        """
        Fold changed field values of linked raw records into their canonicals.

        Unlinked raws are skipped; they are matched with their new values.

        Args:
            changed: (raw_record_id, changed field names) pairs from the loader
        """
        stats = stats or MatchStats(entity_type=self.entity_type)
        for raw_id, fields in changed:
            try:
                raw = await self.db.get(RawRecord, raw_id)
                if raw is None or raw.entity_type != self.entity_type:
                    continue
                link = await self.linker.get_link(raw.id)
                if link is None:
                    continue
                canonical = await self.db.get(self.mapping.canonical, link.canonical_id)
                outcome = await self.unifier.on_rescrape(raw, canonical, fields)
                await self.linker.touch(raw.id)
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                self._reset_pools()
                stats.failed += 1
                stats.errors.append({
                    "phase": "rescrape",
                    "raw_record_id": raw_id,
                    "error_type": type(e).__name__,
                    "error_message": str(e)[:500],
                })
                logger.error(f"Re-scrape update failed for {self.entity_type.value} raw {raw_id}: {e}")
                continue

            stats.rescraped += 1
            if outcome["flagged"]:
                stats.flagged += 1

        return stats

    # ------------------------------------------------------------------
    # Event references
    # ------------------------------------------------------------------

    async def resolve_event_references(self) -> Dict[str, int]:
        """
        Point events at their canonical venue and artists.

        Venue: events without venue_id whose venue_name matches a venue in
        the same city. Artists: every name listed by a linked source raw is
        matched against canonical artists and recorded in event_artists.
        """
        if self.entity_type != EntityType.EVENT:
            raise ValueError("Only events carry venue and artist references")

        try:
            venues_set = await self._resolve_venues()
            artists_added = await self._resolve_artists()
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Resolved references: venues={venues_set}, artist links={artists_added}")
        return {"venues_resolved": venues_set, "artists_linked": artists_added}

    async def _resolve_venues(self) -> int:
        events = (await self.db.execute(
            select(Event).where(
                Event.venue_id.is_(None),
                Event.venue_name.isnot(None),
                Event.state.notin_(list(TERMINAL_STATES))
            ).order_by(Event.id)
        )).scalars().all()
        if not events:
            return 0

        venues_by_city: Dict[str, List[Venue]] = defaultdict(list)
        for venue in (await self.db.execute(select(Venue).order_by(Venue.id))).scalars().all():
            venues_by_city[normalize_text(venue.city)].append(venue)

        resolved = 0
        for event in events:
            prov = self.unifier.provenance(event)
            if prov.tag("venue_id") == settings.CURATED_SOURCE:
                continue
            match = self.matcher.best_match(
                EntityType.VENUE,
                {"name": event.venue_name, "city": event.city},
                venues_by_city.get(normalize_text(event.city), ())
            )
            if match is None:
                continue
            event.venue_id = match.canonical_id
            prov.set_tag("venue_id", prov.tag("venue_name") or SYNC_ACTOR)
            event.field_provenance = prov.to_json()
            resolved += 1

        await self.db.flush()
        return resolved

    async def _resolve_artists(self) -> int:
        rows = (await self.db.execute(
            select(EventLink.event_id, RawRecord.data)
            .join(RawRecord, RawRecord.id == EventLink.raw_record_id)
            .where(RawRecord.source != settings.CURATED_SOURCE)
        )).all()
        wanted = [(event_id, (data or {}).get("artists") or []) for event_id, data in rows]
        if not any(names for _, names in wanted):
            return 0

        artists = (await self.db.execute(select(Artist).order_by(Artist.id))).scalars().all()
        existing = set(
            tuple(row) for row in
            (await self.db.execute(select(event_artists.c.event_id, event_artists.c.artist_id))).all()
        )

        new_pairs = []
        for event_id, names in wanted:
            for name in names:
                match = self.matcher.best_match(EntityType.ARTIST, {"name": name}, artists)
                if match is None:
                    continue
                pair = (event_id, match.canonical_id)
                if pair not in existing:
                    existing.add(pair)
                    new_pairs.append({"event_id": event_id, "artist_id": match.canonical_id})

        if new_pairs:
            await self.db.execute(insert(event_artists), new_pairs)
        return len(new_pairs)

