from sqlalchemy import Column, Float, Boolean, DateTime, ForeignKey, Index, text
from sqlalchemy.orm import declared_attr
from datetime import datetime
from models.base import Base, IdType


class LinkMixin:
    """
    Columns shared by every raw-to-canonical link table.

    raw_record_id is unique: a raw record links to at most one canonical
    record. A partial unique index per table keeps one primary per canonical.
    """

    id = Column(IdType, primary_key=True, autoincrement=True)

    @declared_attr
    def raw_record_id(cls):
        return Column(
            IdType,
            ForeignKey("raw_records.id", ondelete="CASCADE"),
            nullable=False,
            unique=True
        )

    confidence = Column(Float, nullable=False, default=1.0)
    is_primary = Column(Boolean, nullable=False, default=False)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Name of the column pointing at the canonical table
    canonical_key: str = ""

    @property
    def canonical_id(self) -> int:
        return getattr(self, self.canonical_key)

    @canonical_id.setter
    def canonical_id(self, value: int):
        setattr(self, self.canonical_key, value)


def _one_primary_index(table: str, column: str) -> Index:
    return Index(
        f"uq_{table}_one_primary",
        column,
        unique=True,
        postgresql_where=text("is_primary"),
        sqlite_where=text("is_primary = 1"),
    )


class EventLink(LinkMixin, Base):
    __tablename__ = "event_links"
    canonical_key = "event_id"

    event_id = Column(IdType, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)

    __table_args__ = (_one_primary_index("event_links", "event_id"),)


class VenueLink(LinkMixin, Base):
    __tablename__ = "venue_links"
    canonical_key = "venue_id"

    venue_id = Column(IdType, ForeignKey("venues.id", ondelete="CASCADE"), nullable=False, index=True)

    __table_args__ = (_one_primary_index("venue_links", "venue_id"),)


class ArtistLink(LinkMixin, Base):
    __tablename__ = "artist_links"
    canonical_key = "artist_id"

    artist_id = Column(IdType, ForeignKey("artists.id", ondelete="CASCADE"), nullable=False, index=True)

    __table_args__ = (_one_primary_index("artist_links", "artist_id"),)
