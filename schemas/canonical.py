"""
Pydantic schemas for canonical records (API input and output)
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime, date as date_type, time as time_type
from models.base import EventState


# ============================================================================
# Shared
# ============================================================================

class CanonicalEdit(BaseModel):
    """Base for curator edits: blank strings clear a field"""

    @validator("*", pre=True)
    def blank_to_none(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    class Config:
        extra = "forbid"


class LinkInfo(BaseModel):
    """One raw record linked to a canonical record"""
    raw_record_id: int
    source: str
    source_id: str
    confidence: float
    is_primary: bool
    last_synced_at: Optional[datetime] = None
    version: int = 1
    has_changes: bool = False
    dismissed: bool = False
    changes: Optional[Dict[str, Any]] = None


class CanonicalResponse(BaseModel):
    id: int
    has_pending_changes: bool = False
    field_provenance: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @validator("field_provenance", pre=True)
    def provenance_default(cls, v):
        return v or {}

    class Config:
        from_attributes = True
        use_enum_values = True


# ============================================================================
# Events
# ============================================================================

class EventFields(CanonicalEdit):
    date: Optional[date_type] = None
    start_time: Optional[time_type] = None
    end_time: Optional[time_type] = None
    description: Optional[str] = None
    venue_id: Optional[int] = None
    venue_name: Optional[str] = Field(None, max_length=255)
    city: Optional[str] = Field(None, max_length=100)
    flyer_url: Optional[str] = Field(None, max_length=1000)
    content_url: Optional[str] = Field(None, max_length=1000)


class EventCreate(EventFields):
    title: str = Field(..., min_length=1, max_length=500)


class EventUpdate(EventFields):
    title: Optional[str] = Field(None, min_length=1, max_length=500)


class EventResponse(CanonicalResponse):
    title: str
    date: Optional[date_type] = None
    start_time: Optional[time_type] = None
    end_time: Optional[time_type] = None
    description: Optional[str] = None
    venue_id: Optional[int] = None
    venue_name: Optional[str] = None
    city: Optional[str] = None
    flyer_url: Optional[str] = None
    content_url: Optional[str] = None
    state: EventState


class EventDetail(EventResponse):
    links: List[LinkInfo] = Field(default_factory=list)
    artist_ids: List[int] = Field(default_factory=list)


# ============================================================================
# Venues
# ============================================================================

class VenueFields(CanonicalEdit):
    address: Optional[str] = Field(None, max_length=500)
    postal_code: Optional[str] = Field(None, max_length=20)
    city: Optional[str] = Field(None, max_length=100)
    country: Optional[str] = Field(None, max_length=100)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    content_url: Optional[str] = Field(None, max_length=1000)


class VenueCreate(VenueFields):
    name: str = Field(..., min_length=1, max_length=255)


class VenueUpdate(VenueFields):
    name: Optional[str] = Field(None, min_length=1, max_length=255)


class VenueResponse(CanonicalResponse):
    name: str
    address: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    content_url: Optional[str] = None


class VenueDetail(VenueResponse):
    links: List[LinkInfo] = Field(default_factory=list)


# ============================================================================
# Artists
# ============================================================================

class ArtistFields(CanonicalEdit):
    country: Optional[str] = Field(None, max_length=100)
    genres: Optional[List[str]] = None
    image_url: Optional[str] = Field(None, max_length=1000)
    content_url: Optional[str] = Field(None, max_length=1000)

    @validator("genres")
    def clean_genres(cls, v):
        if v is None:
            return None
        genres = [g.strip().lower() for g in v if g and g.strip()]
        return genres or None


class ArtistCreate(ArtistFields):
    name: str = Field(..., min_length=1, max_length=255)


class ArtistUpdate(ArtistFields):
    name: Optional[str] = Field(None, min_length=1, max_length=255)


class ArtistResponse(CanonicalResponse):
    name: str
    country: Optional[str] = None
    genres: Optional[List[str]] = None
    image_url: Optional[str] = None
    content_url: Optional[str] = None


class ArtistDetail(ArtistResponse):
    links: List[LinkInfo] = Field(default_factory=list)
