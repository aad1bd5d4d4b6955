"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class and shared enums (EntityType, EventState, JobStatus)
    raw_record: One source's observation of an entity, with re-scrape diff
    canonical: Unified Event, Venue and Artist records with field provenance
    links: Raw-to-canonical association tables (one per entity type)
    state_transition: Append-only event lifecycle history
    sync_job: Sync job lock/progress row and per-(city, source) scrape runs
    registry: Entity type → table/field mapping used by the services

Database Schema:
    All models inherit from the Base declarative class. JSON columns use
    JSONB on PostgreSQL and plain JSON elsewhere so tests can run on SQLite.
    The schema is versioned with Alembic (alembic/versions).

Usage:
    from models.canonical import Event, Venue, Artist
    from models.base import EntityType, EventState

Example:
    # Create a raw record
    raw = RawRecord(
        entity_type=EntityType.VENUE,
        source="ra",
        source_id="ven-123",
        label="Watergate",
        data={"name": "Watergate", "city": "Berlin"},
        content_hash="...",
    )
    session.add(raw)
    await session.commit()

Relationships:
    - RawRecord → EventLink/VenueLink/ArtistLink (at most one link per raw)
    - Event/Venue/Artist → links (one primary link per canonical)
    - Event → Venue (venue_id), Event ↔ Artist (event_artists)
    - SyncJob → SourceRun (one-to-many)
"""

__all__ = [
    "Base",
    "EntityType",
    "EventState",
    "JobStatus",
    "SyncPhase",
    "RawRecord",
    "Event",
    "Venue",
    "Artist",
    "EventLink",
    "VenueLink",
    "ArtistLink",
    "StateTransition",
    "SyncJob",
    "SourceRun",
]
