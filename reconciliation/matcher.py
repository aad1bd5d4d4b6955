"""
Matcher - scores raw records against canonical candidates.

Scoring per entity type:
- Event:  title × 0.7 + venue name × 0.3, candidates on the same date and city
- Venue:  name × 0.8 + address × 0.2, candidates in the same city
- Artist: name only, unscoped

A normalized-without-spaces exact label match short-circuits to 1.0.
Ties on score resolve to the earliest created canonical, then lowest id.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
import logging

from core.config import settings
from models.base import EntityType
from models.registry import get_mapping
from reconciliation.normalizer import Normalizer, default_normalizer
from reconciliation.similarity import Similarity, get_similarity

logger = logging.getLogger(__name__)


@dataclass
class Thresholds:
    link: Dict[EntityType, float]
    dedup: Dict[EntityType, float]

    @classmethod
    def from_settings(cls) -> "Thresholds":
        return cls(
            link={
                EntityType.EVENT: settings.EVENT_LINK_THRESHOLD,
                EntityType.VENUE: settings.VENUE_LINK_THRESHOLD,
                EntityType.ARTIST: settings.ARTIST_LINK_THRESHOLD,
            },
            dedup={
                EntityType.EVENT: settings.EVENT_DEDUP_THRESHOLD,
                EntityType.VENUE: settings.VENUE_DEDUP_THRESHOLD,
                EntityType.ARTIST: settings.ARTIST_DEDUP_THRESHOLD,
            },
        )


@dataclass
class MatchResult:
    canonical: Any
    confidence: float
    exact: bool = False

    @property
    def canonical_id(self) -> int:
        return self.canonical.id


def _value(record: Any, field: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(field)
    return getattr(record, field, None)


class Matcher:
    """
    Deterministic similarity matcher.

    Works on plain dicts (raw record data) and ORM canonicals alike; it never
    touches the database. Candidate loading and scoping is the caller's job.
    """

    def __init__(
        self,
        similarity: Optional[Similarity] = None,
        normalizer: Optional[Normalizer] = None,
        thresholds: Optional[Thresholds] = None
    ):
        self.similarity = similarity or get_similarity(settings.SIMILARITY_STRATEGY)
        self.normalizer = normalizer or default_normalizer
        self.thresholds = thresholds or Thresholds.from_settings()
        self.title_weight = settings.EVENT_TITLE_WEIGHT
        self.name_weight = settings.VENUE_NAME_WEIGHT

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _text_score(self, a: Any, b: Any) -> float:
        return self.similarity(self.normalizer.text(a), self.normalizer.text(b))

    def is_exact(self, entity_type: EntityType, a: Any, b: Any) -> bool:
        label = get_mapping(entity_type).label_field
        key_a = self.normalizer.compact(_value(a, label))
        return bool(key_a) and key_a == self.normalizer.compact(_value(b, label))

    def score(self, entity_type: EntityType, a: Any, b: Any) -> float:
        """Weighted similarity of two records of the same type."""
        entity_type = EntityType(entity_type)

        if entity_type == EntityType.EVENT:
            title = self._text_score(_value(a, "title"), _value(b, "title"))
            venue_a = self.normalizer.text(_value(a, "venue_name"))
            venue_b = self.normalizer.text(_value(b, "venue_name"))
            if not venue_a or not venue_b:
                return title
            venue = 1.0 if venue_a == venue_b else self.similarity(venue_a, venue_b)
            return title * self.title_weight + venue * (1 - self.title_weight)

        if entity_type == EntityType.VENUE:
            name = self._text_score(_value(a, "name"), _value(b, "name"))
            address_a = self.normalizer.address(_value(a, "address"), _value(a, "city"), _value(a, "country"))
            address_b = self.normalizer.address(_value(b, "address"), _value(b, "city"), _value(b, "country"))
            if not address_a.normalized or not address_b.normalized:
                return name
            address = self.similarity(address_a.normalized, address_b.normalized)
            return name * self.name_weight + address * (1 - self.name_weight)

        return self._text_score(_value(a, "name"), _value(b, "name"))

    def pair_score(self, entity_type: EntityType, a: Any, b: Any) -> float:
        """
        Score two canonical records for deduplication.

        Event candidates already share a date and venue, so only their titles
        are compared.
        """
        entity_type = EntityType(entity_type)
        if self.is_exact(entity_type, a, b):
            return 1.0
        if entity_type == EntityType.EVENT:
            return self._text_score(_value(a, "title"), _value(b, "title"))
        return self.score(entity_type, a, b)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def best_match(
        self,
        entity_type: EntityType,
        record: Mapping[str, Any],
        candidates: Iterable[Any],
        exclude_ids: Sequence[int] = ()
    ) -> Optional[MatchResult]:
        """
        Pick the best canonical candidate for a raw record.

        Args:
            entity_type: Type of both the record and the candidates
            record: Raw record data keyed by canonical field name
            candidates: Canonical records already restricted to the scope
            exclude_ids: Canonical ids that must not be matched (e.g. already
                linked from the same source)

        Returns:
            MatchResult, or None when nothing reaches the link threshold
        """
        entity_type = EntityType(entity_type)
        threshold = self.thresholds.link[entity_type]
        excluded = set(exclude_ids)
        candidates = list(candidates)

        scored: List[MatchResult] = []
        for candidate in candidates:
            if candidate.id in excluded:
                continue
            if self.is_exact(entity_type, record, candidate):
                scored.append(MatchResult(candidate, 1.0, exact=True))
                continue
            confidence = self.score(entity_type, record, candidate)
            if confidence >= threshold:
                scored.append(MatchResult(candidate, round(confidence, 4)))

        if not scored:
            return None

        scored.sort(key=lambda m: (-m.confidence, _created(m.canonical), m.canonical.id))
        best = scored[0]
        logger.debug(
            f"{entity_type.value} match: {_value(record, get_mapping(entity_type).label_field)!r} "
            f"→ canonical {best.canonical.id} (confidence={best.confidence})"
        )
        return best


def _created(record: Any) -> datetime:
    return getattr(record, "created_at", None) or datetime.max
