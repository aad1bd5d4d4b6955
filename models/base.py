from datetime import datetime
from sqlalchemy import Column, DateTime, JSON, BigInteger, Integer
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns
IdType = BigInteger().with_variant(Integer(), "sqlite")


# ============================================================================
# ENUMS
# ============================================================================

class EntityType(str, enum.Enum):
    """Kinds of entity the catalog reconciles"""
    EVENT = "event"
    VENUE = "venue"
    ARTIST = "artist"


class EventState(str, enum.Enum):
    """Publish lifecycle of a canonical event"""
    MANUAL_DRAFT = "MANUAL_DRAFT"
    SCRAPED_DRAFT = "SCRAPED_DRAFT"
    APPROVED_PENDING_DETAILS = "APPROVED_PENDING_DETAILS"
    READY_TO_PUBLISH = "READY_TO_PUBLISH"
    PUBLISHED = "PUBLISHED"
    REJECTED = "REJECTED"
    CANCELED = "CANCELED"


TERMINAL_STATES = frozenset({EventState.REJECTED, EventState.CANCELED})


class JobStatus(str, enum.Enum):
    """Sync job and per-source run status"""
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class SyncPhase(str, enum.Enum):
    """Phases of a sync job, in execution order"""
    PENDING = "pending"
    SCRAPE = "scrape"
    MATCH = "match"
    ENRICH = "enrich"
    DEDUPE = "dedupe"
    DONE = "done"


# ============================================================================
# MIXINS
# ============================================================================

class TimestampMixin:
    """created_at / updated_at columns"""
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
