from sqlalchemy import (
    Column, String, Integer, Enum, DateTime, Boolean, Index, UniqueConstraint
)
from datetime import datetime
from models.base import Base, EntityType, JSONType, IdType


class RawRecord(Base):
    """
    One source's observation of an event, venue or artist.

    Purpose:
    - Keep every scraped version's field values per (source, source_id)
    - Carry the re-scrape diff for curator review
    - Serve as the provenance anchor for canonical fields

    Design Decisions:
    - One table for all entity types, discriminated by entity_type
    - data holds JSON-safe field values keyed by canonical field name
    - content_hash/version change only when tracked fields change
    - changes holds {field: {"old": canonical_value, "new": raw_value}}
    """
    __tablename__ = "raw_records"

    id = Column(IdType, primary_key=True, autoincrement=True)

    # Source identification
    entity_type = Column(Enum(EntityType, name="entity_type"), nullable=False, index=True)
    source = Column(String(50), nullable=False, index=True)
    source_id = Column(String(255), nullable=False)

    # Searchable copies of the primary label and scope
    label = Column(String(500), nullable=False, default="")
    city = Column(String(100), nullable=True, index=True)

    # Field values
    data = Column(JSONType, nullable=False, default=dict)
    content_hash = Column(String(64), nullable=False)
    version = Column(Integer, nullable=False, default=1)

    # Review state
    has_changes = Column(Boolean, nullable=False, default=False, index=True)
    changes = Column(JSONType, nullable=True)
    dismissed = Column(Boolean, nullable=False, default=False)

    # Timestamps
    first_seen_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_seen_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("entity_type", "source", "source_id", name="uq_raw_records_source_key"),
        Index("idx_raw_records_type_city", "entity_type", "city"),
        Index("idx_raw_records_pending", "entity_type", "has_changes", "dismissed"),
    )

    def __repr__(self) -> str:
        return f"<RawRecord {self.entity_type.value}:{self.source}:{self.source_id} v{self.version}>"
