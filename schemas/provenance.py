"""
Typed field provenance per canonical entity.

Each known attribute carries an optional source tag naming who last set it.
Unknown keys are rejected so a typo never creates a phantom field.
"""

from pydantic import BaseModel
from typing import Dict, List, Optional, Type
from models.base import EntityType


class FieldProvenance(BaseModel):
    """Base class: one optional source tag per field"""

    class Config:
        extra = "forbid"
        validate_assignment = True

    @classmethod
    def field_names(cls) -> List[str]:
        return list(cls.model_fields)

    def tag(self, field: str) -> Optional[str]:
        return getattr(self, field)

    def set_tag(self, field: str, source: str) -> None:
        setattr(self, field, source)

    def fields_owned_by(self, source: str) -> List[str]:
        return [name for name in self.field_names() if getattr(self, name) == source]

    def to_json(self) -> Dict[str, str]:
        return self.model_dump(exclude_none=True)


class EventProvenance(FieldProvenance):
    title: Optional[str] = None
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    description: Optional[str] = None
    venue_name: Optional[str] = None
    venue_id: Optional[str] = None
    city: Optional[str] = None
    flyer_url: Optional[str] = None
    content_url: Optional[str] = None


class VenueProvenance(FieldProvenance):
    name: Optional[str] = None
    address: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    content_url: Optional[str] = None


class ArtistProvenance(FieldProvenance):
    name: Optional[str] = None
    country: Optional[str] = None
    genres: Optional[str] = None
    image_url: Optional[str] = None
    content_url: Optional[str] = None


PROVENANCE_MODELS: Dict[EntityType, Type[FieldProvenance]] = {
    EntityType.EVENT: EventProvenance,
    EntityType.VENUE: VenueProvenance,
    EntityType.ARTIST: ArtistProvenance,
}


def load_provenance(entity_type: EntityType, raw: Optional[Dict[str, str]]) -> FieldProvenance:
    """Parse a stored provenance map into its typed model"""
    return PROVENANCE_MODELS[EntityType(entity_type)](**(raw or {}))
