"""
Deduplicator - collapses duplicate canonical records of one entity type.

Candidate pairs are generated within a scope (venues: same city; artists:
unscoped; events: same date and venue), scored with the Matcher, and merged
greedily from the highest score down. Each merge is its own transaction;
a failed merge is rolled back and skipped while the rest proceed.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from itertools import combinations
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy import select, update, delete, insert
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import MergeConflictError
from models.base import EntityType
from models.canonical import Event, Venue, event_artists
from models.registry import get_mapping
from reconciliation.linker import Linker
from reconciliation.matcher import Matcher
from reconciliation.normalizer import normalize_text
from reconciliation.provenance import ProvenanceUnifier

logger = logging.getLogger(__name__)


@dataclass
class DedupResult:
    entity_type: EntityType
    candidates: int = 0
    merged: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "candidates": self.candidates,
            "merged": len(self.merged),
            "skipped": len(self.skipped),
            "merges": self.merged,
            "errors": self.skipped,
        }


class Deduplicator:
    """
    Find and merge near-duplicate canonical records.

    Merges for one entity type run strictly one after another, so two merges
    never race on the same surviving record.
    """

    def __init__(self, db_session: AsyncSession, entity_type: EntityType, matcher: Optional[Matcher] = None):
        self.db = db_session
        self.entity_type = EntityType(entity_type)
        self.mapping = get_mapping(self.entity_type)
        self.matcher = matcher or Matcher()
        self.threshold = self.matcher.thresholds.dedup[self.entity_type]
        self.linker = Linker(db_session, self.entity_type)
        self.unifier = ProvenanceUnifier(db_session, self.entity_type)

    # ------------------------------------------------------------------
    # Candidate generation
    # ------------------------------------------------------------------

    def completeness(self, record: Any) -> int:
        """Count populated important fields (coordinates, address, links...)."""
        score = 0
        for name in self.mapping.important_fields:
            value = record.get(name) if isinstance(record, dict) else getattr(record, name, None)
            if value not in (None, "", []):
                score += 1
        return score

    def _scope_key(
        self,
        snapshot: Dict[str, Any],
        venue_index: Optional[Dict[Tuple[str, str], int]] = None
    ) -> Optional[Tuple]:
        if self.entity_type == EntityType.VENUE:
            return (normalize_text(snapshot.get("city")),)
        if self.entity_type == EntityType.ARTIST:
            return ("*",)
        if snapshot.get("date") is None:
            return None
        if snapshot.get("venue_id") is not None:
            return (snapshot["date"], snapshot["venue_id"])
        venue_name = normalize_text(snapshot.get("venue_name"))
        if not venue_name:
            return None
        # Unresolved copies share a scope with resolved ones when the name
        # names a known venue in the same city
        venue_id = (venue_index or {}).get((normalize_text(snapshot.get("city")), venue_name))
        if venue_id is not None:
            return (snapshot["date"], venue_id)
        return (snapshot["date"], "name", venue_name)

    async def _venue_index(self) -> Dict[Tuple[str, str], int]:
        """(normalized city, normalized name) → lowest venue id"""
        index: Dict[Tuple[str, str], int] = {}
        result = await self.db.execute(select(Venue.id, Venue.name, Venue.city).order_by(Venue.id))
        for venue_id, name, city in result.all():
            index.setdefault((normalize_text(city), normalize_text(name)), venue_id)
        return index

    async def _snapshots(self) -> List[Dict[str, Any]]:
        Model = self.mapping.canonical
        columns = ["id", "created_at", *self.mapping.fields]
        if self.entity_type == EntityType.EVENT:
            columns.append("venue_id")
        result = await self.db.execute(
            select(*[getattr(Model, c) for c in columns]).order_by(Model.id)
        )
        return [dict(row._mapping) for row in result.all()]

    async def find_candidates(self) -> List[Tuple[float, int, int]]:
        """
        Score every in-scope pair.

        Returns:
            (score, id_a, id_b) with id_a < id_b, best first
        """
        venue_index = await self._venue_index() if self.entity_type == EntityType.EVENT else None
        groups: Dict[Tuple, List[Dict[str, Any]]] = defaultdict(list)
        for snapshot in await self._snapshots():
            key = self._scope_key(snapshot, venue_index)
            if key is not None:
                groups[key].append(snapshot)

        pairs = []
        for members in groups.values():
            for a, b in combinations(members, 2):
                score = self.matcher.pair_score(self.entity_type, a, b)
                if score >= self.threshold:
                    pairs.append((round(score, 4), a["id"], b["id"]))

        pairs.sort(key=lambda p: (-p[0], p[1], p[2]))
        return pairs

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def choose_keeper(self, a, b):
        """Higher completeness wins; ties go to the smaller id."""
        score_a, score_b = self.completeness(a), self.completeness(b)
        if score_a != score_b:
            return (a, b) if score_a > score_b else (b, a)
        return (a, b) if a.id < b.id else (b, a)

    async def merge(self, id_a: int, id_b: int) -> Dict[str, Any]:
        """
        Merge two canonical records in one transaction.

        Raises:
            MergeConflictError: Either record vanished or the transaction failed
        """
        context = {"entity_type": self.entity_type.value, "ids": [id_a, id_b]}
        try:
            Model = self.mapping.canonical
            a = await self.db.get(Model, id_a)
            b = await self.db.get(Model, id_b)
            if a is None or b is None:
                raise MergeConflictError("Merge candidate no longer exists", context=context)

            keeper, loser = self.choose_keeper(a, b)
            context.update({"keeper_id": keeper.id, "loser_id": loser.id})

            links_moved = await self.linker.repoint(loser.id, keeper.id)
            refs_moved = await self._repoint_references(loser.id, keeper.id)
            filled = self._fill_nulls(keeper, loser)

            await self.db.delete(loser)
            await self.db.flush()
            await self.unifier.refresh_pending(keeper)
            await self.db.commit()

        except MergeConflictError:
            await self.db.rollback()
            raise

        except Exception as e:
            await self.db.rollback()
            raise MergeConflictError(
                f"Failed to merge {self.entity_type.value} records",
                context=context,
                original_exception=e
            )

        logger.info(
            f"Merged {self.entity_type.value} {context['loser_id']} into {context['keeper_id']} "
            f"(links={links_moved}, refs={refs_moved}, filled={filled})"
        )
        return {
            "keeper_id": context["keeper_id"],
            "loser_id": context["loser_id"],
            "links_moved": links_moved,
            "references_moved": refs_moved,
            "fields_filled": filled,
        }

    def _fill_nulls(self, keeper, loser) -> List[str]:
        """Copy loser values into empty keeper fields, carrying their provenance."""
        keeper_prov = self.unifier.provenance(keeper)
        loser_prov = self.unifier.provenance(loser)
        names = list(self.mapping.fields)
        if self.entity_type == EntityType.EVENT:
            names.append("venue_id")

        filled = []
        for name in names:
            value = getattr(loser, name)
            if getattr(keeper, name) is None and value is not None:
                setattr(keeper, name, value)
                tag = loser_prov.tag(name)
                if tag:
                    keeper_prov.set_tag(name, tag)
                filled.append(name)

        keeper.field_provenance = keeper_prov.to_json()
        keeper.updated_at = datetime.utcnow()
        return filled

    async def _repoint_references(self, loser_id: int, keeper_id: int) -> int:
        if self.entity_type == EntityType.VENUE:
            result = await self.db.execute(
                update(Event)
                .where(Event.venue_id == loser_id)
                .values(venue_id=keeper_id)
                .execution_options(synchronize_session="fetch")
            )
            return result.rowcount or 0

        if self.entity_type == EntityType.ARTIST:
            own, other = event_artists.c.artist_id, event_artists.c.event_id
        else:
            own, other = event_artists.c.event_id, event_artists.c.artist_id

        loser_refs = set((await self.db.execute(select(other).where(own == loser_id))).scalars().all())
        if not loser_refs:
            return 0
        keeper_refs = set((await self.db.execute(select(other).where(own == keeper_id))).scalars().all())

        missing = sorted(loser_refs - keeper_refs)
        if missing:
            await self.db.execute(
                insert(event_artists),
                [{own.key: keeper_id, other.key: ref} for ref in missing]
            )
        await self.db.execute(delete(event_artists).where(own == loser_id))
        return len(missing)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self) -> DedupResult:
        """
        Merge every candidate pair above the dedup threshold.

        A record deleted by an earlier merge in the same run is never reused;
        re-running on converged data finds no pairs and merges nothing.
        """
        result = DedupResult(entity_type=self.entity_type)
        pairs = await self.find_candidates()
        result.candidates = len(pairs)
        logger.info(f"Dedup {self.entity_type.value}: {len(pairs)} candidate pair(s) ≥ {self.threshold}")

        removed = set()
        for score, id_a, id_b in pairs:
            if id_a in removed or id_b in removed:
                continue
            try:
                merged = await self.merge(id_a, id_b)
            except MergeConflictError as e:
                logger.error(
                    f"Dedup merge skipped for {self.entity_type.value} {id_a}/{id_b}: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                result.skipped.append({"ids": [id_a, id_b], "score": score, "error": e.message})
                continue

            merged["score"] = score
            removed.add(merged["loser_id"])
            result.merged.append(merged)

        logger.info(
            f"Dedup {self.entity_type.value} complete: merged={len(result.merged)}, "
            f"skipped={len(result.skipped)}"
        )
        return result
