"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any, Generic, TypeVar
from datetime import datetime
from models.base import EntityType, EventState

T = TypeVar("T")


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    sync_running: bool = False
    last_sync_status: Optional[str] = None
    last_sync_completed_at: Optional[datetime] = None
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"
        if values.get("last_sync_status") in ("failed", "partial"):
            return "degraded"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "sync_running": False,
                "last_sync_status": "success",
                "last_sync_completed_at": "2024-01-15T03:12:00Z"
            }
        }


# ============================================================================
# Pagination
# ============================================================================

class PaginationMetadata(BaseModel):
    """Pagination metadata"""
    total_items: int
    total_pages: int
    current_page: int
    page_size: int
    has_next: bool
    has_previous: bool


class Page(BaseModel, Generic[T]):
    """Paginated list response"""
    items: List[T]
    pagination: PaginationMetadata
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Raw records and review queue
# ============================================================================

class RawRecordResponse(BaseModel):
    id: int
    entity_type: EntityType
    source: str
    source_id: str
    label: str
    city: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    version: int
    has_changes: bool
    changes: Optional[Dict[str, Any]] = None
    dismissed: bool
    first_seen_at: datetime
    last_seen_at: datetime
    canonical_id: Optional[int] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class ApplyChangesRequest(BaseModel):
    """Fields to write through; omit to apply the whole diff"""
    fields: Optional[List[str]] = None


class ManualLinkRequest(BaseModel):
    source: str = Field(..., min_length=1, max_length=50)
    source_id: str = Field(..., min_length=1, max_length=255)


# ============================================================================
# Publish workflow
# ============================================================================

class TransitionRequest(BaseModel):
    target_state: EventState
    actor: str = Field("admin", min_length=1, max_length=100)
    reason: Optional[str] = Field(None, max_length=1000)


class BulkTransitionRequest(TransitionRequest):
    event_ids: List[int] = Field(..., min_length=1, max_length=500)


class TransitionResponse(BaseModel):
    id: int
    event_id: int
    previous_state: Optional[str] = None
    new_state: str
    actor: str
    reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class BulkTransitionResult(BaseModel):
    event_id: int
    ok: bool
    state: Optional[str] = None
    error_type: Optional[str] = None
    message: Optional[str] = None
    fields: Optional[Dict[str, str]] = None


class ValidationReport(BaseModel):
    event_id: int
    valid: bool
    problems: Dict[str, str] = Field(default_factory=dict)


# ============================================================================
# Sync
# ============================================================================

class SyncRequest(BaseModel):
    cities: Optional[List[str]] = None
    sources: Optional[List[str]] = None
    enrich_after: bool = False
    dedupe_after: bool = False
    requested_by: Optional[str] = Field(None, max_length=100)

    @validator("cities", "sources")
    def clean_names(cls, v):
        if v is None:
            return None
        cleaned = [s.strip().lower() for s in v if s and s.strip()]
        return cleaned or None


class SyncJobResponse(BaseModel):
    job_id: int
    status: str
    phase: str
    cities: List[str] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)
    current_city: Optional[str] = None
    current_source: Optional[str] = None
    percent: float = 0.0
    results: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: datetime
    heartbeat_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class SyncTriggerResponse(BaseModel):
    started: bool
    job: SyncJobResponse


class SyncStatusResponse(BaseModel):
    status: str
    job: Optional[SyncJobResponse] = None


class DedupeRequest(BaseModel):
    entity_types: Optional[List[EntityType]] = None


# ============================================================================
# Statistics Schemas
# ============================================================================

class SourceRunSummary(BaseModel):
    sync_job_id: Optional[int] = None
    city: str
    source: str
    status: str
    records_fetched: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_unchanged: int = 0
    records_failed: int = 0
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class StatsResponse(BaseModel):
    """Statistics response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    canonical_counts: Dict[str, int]
    raw_counts_by_source: Dict[str, int]
    events_by_state: Dict[str, int]
    pending_changes: Dict[str, int]
    unlinked_raw_records: Dict[str, int]

    recent_runs: List[SourceRunSummary] = Field(default_factory=list)
    last_sync_success: Optional[datetime] = None
    last_sync_failure: Optional[datetime] = None
    request_id: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "canonical_counts": {"event": 1200, "venue": 310, "artist": 2400},
                "raw_counts_by_source": {"ra": 2100, "tm": 1800, "curated": 95},
                "events_by_state": {"SCRAPED_DRAFT": 800, "PUBLISHED": 250},
                "pending_changes": {"event": 4, "venue": 1, "artist": 0},
                "unlinked_raw_records": {"event": 0, "venue": 0, "artist": 0},
                "last_sync_success": "2024-01-15T03:12:00Z"
            }
        }


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    fields: Optional[Dict[str, str]] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        json_schema_extra = {
            "example": {
                "error": "PublishValidationError",
                "detail": "Event is not ready to publish",
                "fields": {"venue_id": "missing"},
                "timestamp": "2024-01-15T10:30:00Z"
            }
        }
