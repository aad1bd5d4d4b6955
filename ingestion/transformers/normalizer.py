"""
Transform connector payloads into validated source records
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Tuple
from pydantic import ValidationError
from models.base import EntityType
from schemas.source import SCRAPED_MODELS, SourceRecord
import logging

logger = logging.getLogger(__name__)


# Source payload keys accepted for each canonical field, first match wins
FIELD_ALIASES: Dict[EntityType, Dict[str, Tuple[str, ...]]] = {
    EntityType.EVENT: {
        "source_id": ("source_id", "source_event_id", "id"),
        "title": ("title", "name"),
        "date": ("date", "start_date"),
        "start_time": ("start_time", "starts_at"),
        "end_time": ("end_time", "ends_at"),
        "description": ("description", "summary"),
        "venue_name": ("venue_name", "venue"),
        "venue_address": ("venue_address",),
        "city": ("venue_city", "city"),
        "flyer_url": ("flyer_url", "flyer_front", "image_url"),
        "content_url": ("content_url", "url", "ticket_url"),
        "artists": ("artists", "lineup"),
    },
    EntityType.VENUE: {
        "source_id": ("source_id", "source_venue_id", "id"),
        "name": ("name", "venue_name"),
        "address": ("address", "venue_address"),
        "postal_code": ("postal_code", "zip"),
        "city": ("city", "venue_city"),
        "country": ("country", "venue_country"),
        "latitude": ("latitude", "lat"),
        "longitude": ("longitude", "lng", "lon"),
        "content_url": ("content_url", "url"),
    },
    EntityType.ARTIST: {
        "source_id": ("source_id", "source_artist_id", "id"),
        "name": ("name",),
        "country": ("country",),
        "genres": ("genres", "tags"),
        "image_url": ("image_url", "image"),
        "content_url": ("content_url", "url"),
    },
}


@dataclass
class NormalizeResult:
    records: List[SourceRecord] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)


class RecordNormalizer:
    """
    Normalize one source's payloads into SourceRecords.

    Handles:
    - Per-source key aliases
    - Type conversion and validation (via the Scraped* schemas)
    - City fallback to the city the listing was fetched for
    """

    def __init__(self, source: str, city: Optional[str] = None):
        self.source = source
        self.city = city

    def _pick(self, payload: Dict[str, Any], keys: Tuple[str, ...]) -> Any:
        for key in keys:
            value = payload.get(key)
            if value not in (None, ""):
                return value
        return None

    def normalize(self, entity_type: EntityType, payload: Dict[str, Any]) -> SourceRecord:
        """
        Normalize a single payload.

        Raises:
            ValidationError: The payload lacks a required field or has a bad value
        """
        entity_type = EntityType(entity_type)
        if not isinstance(payload, dict):
            raise TypeError(f"Expected a mapping, got {type(payload).__name__}")
        values = {
            name: self._pick(payload, keys)
            for name, keys in FIELD_ALIASES[entity_type].items()
        }
        values["source"] = self.source
        if values.get("source_id") is not None:
            values["source_id"] = str(values["source_id"])
        if not values.get("city"):
            values["city"] = self.city

        scraped = SCRAPED_MODELS[entity_type](**values)
        return SourceRecord.from_scraped(entity_type, scraped)

    def normalize_many(self, entity_type: EntityType, payloads: List[Dict[str, Any]]) -> NormalizeResult:
        """Normalize a batch; a bad payload is recorded and skipped"""
        result = NormalizeResult()
        for index, payload in enumerate(payloads):
            try:
                result.records.append(self.normalize(entity_type, payload))
            except (ValidationError, ValueError, TypeError) as e:
                error_detail = {
                    "phase": "normalization",
                    "entity_type": EntityType(entity_type).value,
                    "index": index,
                    "source_id": payload.get("source_id", payload.get("id")) if isinstance(payload, dict) else None,
                    "error_type": type(e).__name__,
                    "error_message": str(e)[:500],
                }
                result.errors.append(error_detail)
                logger.error(
                    f"Normalization failed for {self.source} {error_detail['entity_type']} "
                    f"#{index}: {error_detail['error_message']}",
                    extra={"error_context": error_detail}
                )

        return result
