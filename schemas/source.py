"""
Pydantic schemas for records delivered by source connectors
"""

from pydantic import BaseModel, Field, validator
import hashlib
import json
from typing import Optional, List, Dict, Any
from datetime import date as date_type, time as time_type
from models.base import EntityType


class ScrapedRecord(BaseModel):
    """
    Common fields of one scraped observation.

    Ensures:
    - Source tag and source-native id are present
    - Text fields are stripped, empty strings become None
    """

    source: str = Field(..., min_length=1, max_length=50)
    source_id: str = Field(..., min_length=1, max_length=255)
    city: Optional[str] = Field(None, max_length=100)
    content_url: Optional[str] = Field(None, max_length=1000)

    @validator("source", "source_id", pre=True)
    def clean_key(cls, v):
        if v is None:
            return v
        return str(v).strip()

    @validator("*", pre=True)
    def blank_to_none(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    class Config:
        extra = "ignore"


class ScrapedEvent(ScrapedRecord):
    title: str = Field(..., min_length=1, max_length=500)
    date: Optional[date_type] = None
    start_time: Optional[time_type] = None
    end_time: Optional[time_type] = None
    description: Optional[str] = None
    venue_name: Optional[str] = Field(None, max_length=255)
    venue_address: Optional[str] = Field(None, max_length=500)
    flyer_url: Optional[str] = Field(None, max_length=1000)
    artists: List[str] = Field(default_factory=list)

    @validator("date", pre=True)
    def date_part(cls, v):
        """Accept full ISO timestamps for the date"""
        if isinstance(v, str) and len(v) > 10:
            return v[:10]
        return v

    @validator("start_time", "end_time", pre=True)
    def time_part(cls, v):
        """Accept full ISO timestamps for times"""
        if isinstance(v, str) and "T" in v:
            return v.split("T", 1)[1][:8]
        return v

    @validator("artists", pre=True)
    def clean_artists(cls, v):
        """Ensure artists is a list of names"""
        if v is None:
            return []
        if isinstance(v, str):
            return [a.strip() for a in v.split(",") if a.strip()]
        names = []
        for item in v:
            name = item.get("name") if isinstance(item, dict) else item
            if name and str(name).strip():
                names.append(str(name).strip())
        return names


class ScrapedVenue(ScrapedRecord):
    name: str = Field(..., min_length=1, max_length=255)
    address: Optional[str] = Field(None, max_length=500)
    postal_code: Optional[str] = Field(None, max_length=20)
    country: Optional[str] = Field(None, max_length=100)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class ScrapedArtist(ScrapedRecord):
    name: str = Field(..., min_length=1, max_length=255)
    country: Optional[str] = Field(None, max_length=100)
    genres: Optional[List[str]] = None
    image_url: Optional[str] = Field(None, max_length=1000)

    @validator("genres", pre=True)
    def clean_genres(cls, v):
        if v is None:
            return None
        if isinstance(v, str):
            v = v.split(",")
        genres = [str(g).strip().lower() for g in v if str(g).strip()]
        return genres or None


SCRAPED_MODELS = {
    EntityType.EVENT: ScrapedEvent,
    EntityType.VENUE: ScrapedVenue,
    EntityType.ARTIST: ScrapedArtist,
}


class SourceRecord(BaseModel):
    """
    A validated record ready for the raw loader.

    data holds JSON-safe values keyed by canonical field name.
    """

    entity_type: EntityType
    source: str
    source_id: str
    city: Optional[str] = None
    label: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_scraped(cls, entity_type: EntityType, scraped: ScrapedRecord) -> "SourceRecord":
        data = scraped.model_dump(mode="json", exclude={"source", "source_id"})
        if isinstance(scraped, ScrapedEvent):
            for key in ("start_time", "end_time"):
                if data.get(key):
                    data[key] = data[key][:5]
            label = scraped.title
        else:
            label = scraped.name
        return cls(
            entity_type=entity_type,
            source=scraped.source,
            source_id=scraped.source_id,
            city=scraped.city,
            label=label,
            data=data,
        )


def compute_content_hash(data: Dict[str, Any]) -> str:
    """SHA-256 of the record's field values in canonical JSON form"""
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
