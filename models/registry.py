"""
Per-entity-type table mapping used by the reconciliation services.

Each EntityType maps to its canonical model, link model and the fields that
take part in merging, provenance and deduplication.
"""

from dataclasses import dataclass
from datetime import date, time
from typing import Any, Dict, Tuple, Type
from models.base import EntityType
from models.canonical import Event, Venue, Artist
from models.links import EventLink, VenueLink, ArtistLink

DATE_FIELDS = frozenset({"date"})
TIME_FIELDS = frozenset({"start_time", "end_time"})


@dataclass(frozen=True)
class EntityMapping:
    entity_type: EntityType
    canonical: Type
    link: Type
    label_field: str
    # Fields copied between raw and canonical records
    fields: Tuple[str, ...]
    # Fields that count towards keeper selection during deduplication
    important_fields: Tuple[str, ...]

    @property
    def link_key(self) -> str:
        return self.link.canonical_key

    def link_column(self):
        return getattr(self.link, self.link_key)


ENTITY_MAPPINGS: Dict[EntityType, EntityMapping] = {
    EntityType.EVENT: EntityMapping(
        entity_type=EntityType.EVENT,
        canonical=Event,
        link=EventLink,
        label_field="title",
        fields=(
            "title", "date", "start_time", "end_time", "description",
            "venue_name", "city", "flyer_url", "content_url",
        ),
        important_fields=("venue_id", "description", "start_time", "flyer_url", "content_url"),
    ),
    EntityType.VENUE: EntityMapping(
        entity_type=EntityType.VENUE,
        canonical=Venue,
        link=VenueLink,
        label_field="name",
        fields=(
            "name", "address", "postal_code", "city", "country",
            "latitude", "longitude", "content_url",
        ),
        important_fields=("latitude", "longitude", "address", "postal_code", "content_url"),
    ),
    EntityType.ARTIST: EntityMapping(
        entity_type=EntityType.ARTIST,
        canonical=Artist,
        link=ArtistLink,
        label_field="name",
        fields=("name", "country", "genres", "image_url", "content_url"),
        important_fields=("country", "genres", "image_url", "content_url"),
    ),
}


def get_mapping(entity_type: EntityType) -> EntityMapping:
    return ENTITY_MAPPINGS[EntityType(entity_type)]


def to_column_value(field: str, value: Any) -> Any:
    """Convert a JSON-safe raw value into the canonical column's Python type"""
    if value is None or value == "":
        return None
    if field in DATE_FIELDS and isinstance(value, str):
        return date.fromisoformat(value[:10])
    if field in TIME_FIELDS and isinstance(value, str):
        return time.fromisoformat(value)
    return value


def to_json_value(field: str, value: Any) -> Any:
    """Convert a canonical column value into the JSON-safe form stored on raws"""
    if value is None:
        return None
    if isinstance(value, time):
        return value.strftime("%H:%M")
    if isinstance(value, date):
        return value.isoformat()
    return value
