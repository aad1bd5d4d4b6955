"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models for scraped payloads, field provenance
and API request/response bodies:

Schemas:
    source: Scraped venue/artist/event payloads and the SourceRecord they become
    provenance: Typed field → owning source mapping stored on canonical records
    canonical: Canonical record responses and curator create/edit bodies
    api: Review queue, publish workflow, sync, health and stats schemas

Features:
    - Automatic data validation
    - Type coercion and conversion
    - JSON serialization/deserialization
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.source import ScrapedEvent, SourceRecord
    from schemas.canonical import EventDetail, EventUpdate
    from schemas.api import TransitionRequest, SyncJobResponse

Example:
    # Validate a scraped event and turn it into a raw record payload
    event = ScrapedEvent(
        source_id="ev-991",
        title="Klubnacht",
        date="2024-06-01T23:00:00",
        start_time="2024-06-01T23:00:00",
        venue_name="Berghain",
        city="Berlin",
    )
    record = SourceRecord.from_scraped(EntityType.EVENT, event)

    assert event.date.isoformat() == "2024-06-01"
    assert event.start_time.isoformat() == "23:00:00"
"""

__all__ = [
    "ScrapedVenue",
    "ScrapedArtist",
    "ScrapedEvent",
    "SourceRecord",
    "FieldProvenance",
    "EventDetail",
    "VenueDetail",
    "ArtistDetail",
    "SyncJobResponse",
    "HealthCheckResponse",
    "StatsResponse",
]
