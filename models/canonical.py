from sqlalchemy import (
    Column, String, Text, Date, Time, Float, Boolean, Enum, ForeignKey, Index, Table
)
from models.base import Base, TimestampMixin, EventState, JSONType, IdType


event_artists = Table(
    "event_artists",
    Base.metadata,
    Column("event_id", IdType, ForeignKey("events.id", ondelete="CASCADE"), primary_key=True),
    Column("artist_id", IdType, ForeignKey("artists.id", ondelete="CASCADE"), primary_key=True),
)


class Venue(TimestampMixin, Base):
    """
    Canonical venue.

    field_provenance maps field name to the source tag that last set it;
    the curated tag blocks automatic overwrites.
    """
    __tablename__ = "venues"

    id = Column(IdType, primary_key=True, autoincrement=True)

    name = Column(String(255), nullable=False, index=True)
    address = Column(String(500), nullable=True)
    postal_code = Column(String(20), nullable=True)
    city = Column(String(100), nullable=True, index=True)
    country = Column(String(100), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    content_url = Column(String(1000), nullable=True)

    has_pending_changes = Column(Boolean, nullable=False, default=False)
    field_provenance = Column(JSONType, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<Venue {self.id} {self.name!r}>"


class Artist(TimestampMixin, Base):
    """Canonical artist."""
    __tablename__ = "artists"

    id = Column(IdType, primary_key=True, autoincrement=True)

    name = Column(String(255), nullable=False, index=True)
    country = Column(String(100), nullable=True)
    genres = Column(JSONType, nullable=True)
    image_url = Column(String(1000), nullable=True)
    content_url = Column(String(1000), nullable=True)

    has_pending_changes = Column(Boolean, nullable=False, default=False)
    field_provenance = Column(JSONType, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<Artist {self.id} {self.name!r}>"


class Event(TimestampMixin, Base):
    """
    Canonical event with its publish lifecycle state.

    Design Decisions:
    - venue_name keeps the scraped venue label until it resolves to venue_id
    - has_pending_changes is true while any linked raw has an undismissed diff
    """
    __tablename__ = "events"

    id = Column(IdType, primary_key=True, autoincrement=True)

    title = Column(String(500), nullable=False, index=True)
    date = Column(Date, nullable=True, index=True)
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    description = Column(Text, nullable=True)
    venue_id = Column(IdType, ForeignKey("venues.id", ondelete="SET NULL"), nullable=True, index=True)
    venue_name = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True, index=True)
    flyer_url = Column(String(1000), nullable=True)
    content_url = Column(String(1000), nullable=True)

    state = Column(
        Enum(EventState, name="event_state"),
        nullable=False,
        default=EventState.SCRAPED_DRAFT,
        index=True
    )
    has_pending_changes = Column(Boolean, nullable=False, default=False, index=True)

    field_provenance = Column(JSONType, nullable=False, default=dict)

    __table_args__ = (
        Index("idx_events_date_city", "date", "city"),
        Index("idx_events_state_date", "state", "date"),
    )

    def __repr__(self) -> str:
        return f"<Event {self.id} {self.title!r} {self.state.value}>"
