from sqlalchemy import Column, String, Integer, Float, Boolean, Text, DateTime, ForeignKey, Index, text
from datetime import datetime
from models.base import Base, JobStatus, SyncPhase, JSONType, IdType


class SyncJob(Base):
    """
    One exclusive run of the scrape → match → enrich → dedupe pipeline.

    Purpose:
    - Storage-level lock: at most one row may have status "running"
    - Queryable progress while the job runs
    - Aggregated per-phase results after it finishes

    Design Decisions:
    - Partial unique index on status enforces the single running job
    - heartbeat_at acts as a lease; a running job with an old heartbeat is stale
    """
    __tablename__ = "sync_jobs"

    id = Column(IdType, primary_key=True, autoincrement=True)

    status = Column(String(20), nullable=False, default=JobStatus.RUNNING.value)
    phase = Column(String(20), nullable=False, default=SyncPhase.PENDING.value)

    # Request snapshot
    cities = Column(JSONType, nullable=False, default=list)
    sources = Column(JSONType, nullable=False, default=list)
    enrich_after = Column(Boolean, nullable=False, default=False)
    dedupe_after = Column(Boolean, nullable=False, default=False)
    requested_by = Column(String(100), nullable=True)

    # Progress
    current_city = Column(String(100), nullable=True)
    current_source = Column(String(50), nullable=True)
    percent = Column(Float, nullable=False, default=0.0)

    # Outcome
    results = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    heartbeat_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_sync_jobs_one_running",
            "status",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
    )

    def snapshot(self) -> dict:
        """Serializable view of the job for status queries"""
        return {
            "job_id": self.id,
            "status": self.status,
            "phase": self.phase,
            "cities": list(self.cities or []),
            "sources": list(self.sources or []),
            "current_city": self.current_city,
            "current_source": self.current_source,
            "percent": round(self.percent or 0.0, 1),
            "results": self.results or {},
            "error_message": self.error_message,
            "started_at": self.started_at,
            "heartbeat_at": self.heartbeat_at,
            "completed_at": self.completed_at,
        }


class SourceRun(Base):
    """
    Scrape outcome for one (city, source) pair within a sync job.

    Purpose:
    - Audit trail of every scrape
    - Per-source failure isolation (a failed pair never aborts the job)
    """
    __tablename__ = "source_runs"

    id = Column(IdType, primary_key=True, autoincrement=True)
    sync_job_id = Column(IdType, ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=True, index=True)

    city = Column(String(100), nullable=False)
    source = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=JobStatus.RUNNING.value)

    # Statistics
    records_fetched = Column(Integer, nullable=False, default=0)
    records_inserted = Column(Integer, nullable=False, default=0)
    records_updated = Column(Integer, nullable=False, default=0)
    records_unchanged = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    __table_args__ = (
        Index("idx_source_runs_source_started", "source", "city", "started_at"),
    )
