"""
Sync pipeline components for scraping and loading source records.

This package contains the scrape side of the pipeline and the job runner:

Modules:
    base: Abstract SourceConnector (one source, all entity types)
    orchestrator: Exclusive sync jobs (scrape → match → enrich → dedupe)
    scheduler: APScheduler integration for the nightly sync and expiry sweep

Subpackages:
    connectors: Scraper service connector and resilient HTTP client
    transformers: Payload normalization into validated SourceRecords
    loaders: Raw record upserts with content hashes and re-scrape diffs

Architecture:
    Each (city, source) pair is scraped and loaded on its own; a failing
    source is recorded on its SourceRun and only degrades the job to
    "partial". Matching starts once every pair has been scraped.

Usage:
    from ingestion.orchestrator import SyncOrchestrator

Example:
    orchestrator = SyncOrchestrator()
    snapshot, started = await orchestrator.trigger_sync(cities=["berlin"])
    if started:
        await orchestrator.run_job(snapshot["job_id"])

Error Handling:
    All components use custom exceptions from core.exceptions for
    structured error handling with retry logic and circuit breakers.
"""

__all__ = [
    "SourceConnector",
    "ScraperConnector",
    "RecordNormalizer",
    "RawRecordLoader",
    "SyncOrchestrator",
    "SyncScheduler",
]
