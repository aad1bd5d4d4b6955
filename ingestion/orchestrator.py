"""
Sync Orchestrator - runs the scrape → match → enrich → dedupe pipeline.

This module provides exclusive, observable sync jobs with:
- A persisted job row as the lock (partial unique index on running status)
- A heartbeat lease so a crashed job never blocks later syncs forever
- Per-(city, source) failure isolation with a SourceRun audit row each
- Progress (phase, current city/source, percent) queryable while running
"""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from core.config import settings
from core.database import async_session_maker
from core.exceptions import RecordNotFoundError, SourceUnavailableError
from ingestion.base import SourceConnector
from ingestion.connectors.scraper_connector import ScraperConnector
from ingestion.loaders.raw_loader import RawRecordLoader
from ingestion.transformers.normalizer import RecordNormalizer
from models.base import EntityType, JobStatus, SyncPhase
from models.sync_job import SourceRun, SyncJob
from reconciliation.deduplicator import Deduplicator
from reconciliation.enrichment import ArtistEnricher, MusicBrainzClient
from reconciliation.matcher import Matcher
from reconciliation.publishing import PublishWorkflow
from reconciliation.service import MatchService

logger = logging.getLogger(__name__)

# Share of the progress bar covered by each phase
PHASE_PROGRESS = {
    SyncPhase.SCRAPE: (0.0, 60.0),
    SyncPhase.MATCH: (60.0, 80.0),
    SyncPhase.ENRICH: (80.0, 90.0),
    SyncPhase.DEDUPE: (90.0, 100.0),
}

ChangedRecords = Dict[EntityType, List[Tuple[int, List[str]]]]


def default_connectors(sources: Optional[Sequence[str]] = None) -> Dict[str, SourceConnector]:
    return {source: ScraperConnector(source) for source in (sources or settings.SYNC_DEFAULT_SOURCES)}


class SyncOrchestrator:
    """
    Sync pipeline orchestrator.

    Responsibilities:
    - Guarantee at most one running sync job
    - Scrape cities sequentially (with a delay between cities)
    - Match entity types in parallel, then resolve event references
    - Optionally enrich artists and deduplicate
    - Record accurate job and per-source run metrics
    """

    def __init__(
        self,
        session_factory=None,
        connectors: Optional[Dict[str, SourceConnector]] = None,
        matcher: Optional[Matcher] = None,
        musicbrainz: Optional[MusicBrainzClient] = None,
        inter_city_delay: Optional[float] = None,
        parallel: bool = True
    ):
        self.session_factory = session_factory or async_session_maker
        self.connectors = connectors if connectors is not None else default_connectors()
        self.matcher = matcher or Matcher()
        self.musicbrainz = musicbrainz
        self.inter_city_delay = (
            settings.SYNC_INTER_CITY_DELAY_SECONDS if inter_city_delay is None else inter_city_delay
        )
        # SQLite serializes writers; tests run the phases sequentially
        self.parallel = parallel
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Job lock
    # ------------------------------------------------------------------

    async def _running_job(self, session) -> Optional[SyncJob]:
        """The running job, after failing it if its lease has expired"""
        result = await session.execute(
            select(SyncJob).where(SyncJob.status == JobStatus.RUNNING.value)
        )
        job = result.scalar_one_or_none()
        if job is None:
            return None

        lease = timedelta(seconds=settings.SYNC_JOB_LEASE_SECONDS)
        if job.heartbeat_at and datetime.utcnow() - job.heartbeat_at > lease:
            logger.warning(f"Sync job {job.id} lease expired (last heartbeat {job.heartbeat_at}); marking failed")
            job.status = JobStatus.FAILED.value
            job.error_message = "Lease expired without heartbeat"
            job.completed_at = datetime.utcnow()
            await session.commit()
            return None
        return job

    async def trigger_sync(
        self,
        cities: Optional[Sequence[str]] = None,
        sources: Optional[Sequence[str]] = None,
        enrich_after: bool = False,
        dedupe_after: bool = False,
        requested_by: Optional[str] = None
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Claim the sync lock by inserting a running job row.

        Returns:
            (job snapshot, started). When a job is already running its
            snapshot is returned with started=False and nothing is queued.
        """
        cities = list(cities or settings.SYNC_DEFAULT_CITIES)
        sources = list(sources or self.connectors.keys())

        async with self.session_factory() as session:
            running = await self._running_job(session)
            if running is not None:
                logger.info(f"Sync already running (job {running.id}); not starting another")
                return running.snapshot(), False

            now = datetime.utcnow()
            job = SyncJob(
                status=JobStatus.RUNNING.value,
                phase=SyncPhase.PENDING.value,
                cities=cities,
                sources=sources,
                enrich_after=enrich_after,
                dedupe_after=dedupe_after,
                requested_by=requested_by,
                percent=0.0,
                started_at=now,
                heartbeat_at=now,
            )
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                # Lost the race against a concurrent trigger
                await session.rollback()
                running = await self._running_job(session)
                if running is None:
                    raise
                return running.snapshot(), False

            logger.info(f"Sync job {job.id} started: cities={cities}, sources={sources}")
            return job.snapshot(), True

    async def start_sync(self, **kwargs) -> Tuple[Dict[str, Any], bool]:
        """Trigger a sync and run it in the background"""
        snapshot, started = await self.trigger_sync(**kwargs)
        if started:
            task = asyncio.create_task(self._run_background(snapshot["job_id"]))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return snapshot, started

    async def _run_background(self, job_id: int) -> None:
        try:
            await self.run_job(job_id)
        except Exception as e:
            # Already logged and recorded on the job row by run_job
            logger.debug(f"Background sync job {job_id} ended with {type(e).__name__}")

    async def _update_job(self, job_id: int, **values) -> None:
        values["heartbeat_at"] = datetime.utcnow()
        async with self.session_factory() as session:
            await session.execute(update(SyncJob).where(SyncJob.id == job_id).values(**values))
            await session.commit()

    async def _progress(self, job_id: int, phase: SyncPhase, fraction: float, **values) -> None:
        start, end = PHASE_PROGRESS[phase]
        await self._update_job(
            job_id, phase=phase.value, percent=start + (end - start) * min(max(fraction, 0.0), 1.0), **values
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run_job(self, job_id: int) -> Dict[str, Any]:
        """
        Execute a claimed job to completion.

        Source failures only degrade the job to "partial"; any other error
        fails the job. The lock is always released.
        """
        async with self.session_factory() as session:
            job = await session.get(SyncJob, job_id)
            if job is None:
                raise RecordNotFoundError(f"Sync job {job_id} not found", context={"job_id": job_id})
            cities, sources = list(job.cities or []), list(job.sources or [])
            enrich_after, dedupe_after = job.enrich_after, job.dedupe_after

        results: Dict[str, Any] = {}
        try:
            scrape_runs, changed = await self._scrape(job_id, cities, sources)
            results["scrape"] = scrape_runs

            await self._progress(job_id, SyncPhase.MATCH, 0.0, current_city=None, current_source=None)
            results["match"] = await self._match(changed)
            results["references"] = await self._resolve_references()
            async with self.session_factory() as session:
                results["expired"] = len(await PublishWorkflow(session).expire_past_events())
            await self._progress(job_id, SyncPhase.MATCH, 1.0)

            if enrich_after:
                await self._progress(job_id, SyncPhase.ENRICH, 0.0)
                results["enrich"] = await self._enrich()

            if dedupe_after:
                await self._progress(job_id, SyncPhase.DEDUPE, 0.0)
                results["dedupe"] = await self._dedupe()

            failed_pairs = [r for r in scrape_runs if r["status"] == JobStatus.FAILED.value]
            status = JobStatus.PARTIAL if failed_pairs else JobStatus.SUCCESS
            await self._update_job(
                job_id,
                status=status.value,
                phase=SyncPhase.DONE.value,
                percent=100.0,
                results=results,
                error_message=f"{len(failed_pairs)} source run(s) failed" if failed_pairs else None,
                completed_at=datetime.utcnow(),
            )
            logger.info(f"Sync job {job_id} completed: {status.value}")

        except Exception as e:
            logger.exception(f"Sync job {job_id} failed")
            try:
                await self._update_job(
                    job_id,
                    status=JobStatus.FAILED.value,
                    results=results,
                    error_message=str(e)[:1000],
                    completed_at=datetime.utcnow(),
                )
            except Exception:
                logger.exception(f"Could not mark sync job {job_id} failed; its lease will expire")
            raise

        return results

    async def _scrape(self, job_id: int, cities: List[str], sources: List[str]) -> Tuple[List[Dict[str, Any]], ChangedRecords]:
        runs: List[Dict[str, Any]] = []
        changed: ChangedRecords = defaultdict(list)
        total = max(len(cities) * len(sources), 1)
        done = 0

        for index, city in enumerate(cities):
            if index > 0 and self.inter_city_delay > 0:
                await asyncio.sleep(self.inter_city_delay)

            for source in sources:
                await self._progress(
                    job_id, SyncPhase.SCRAPE, done / total, current_city=city, current_source=source
                )
                summary, pair_changed = await self._scrape_pair(job_id, city, source)
                runs.append(summary)
                for entity_type, items in pair_changed.items():
                    changed[entity_type].extend(items)
                done += 1

        await self._progress(job_id, SyncPhase.SCRAPE, 1.0)
        return runs, changed

    async def _scrape_pair(self, job_id: int, city: str, source: str) -> Tuple[Dict[str, Any], ChangedRecords]:
        """Fetch, normalize and load one (city, source) pair"""
        changed: ChangedRecords = defaultdict(list)
        async with self.session_factory() as session:
            run = SourceRun(
                sync_job_id=job_id,
                city=city,
                source=source,
                status=JobStatus.RUNNING.value,
                records_fetched=0,
                records_inserted=0,
                records_updated=0,
                records_unchanged=0,
                records_failed=0,
                started_at=datetime.utcnow(),
            )
            session.add(run)
            await session.commit()

            errors: List[Dict[str, Any]] = []
            try:
                connector = self.connectors.get(source)
                if connector is None:
                    raise SourceUnavailableError(
                        f"No connector configured for source {source}",
                        context={"source": source, "city": city}
                    )
                payloads = await connector.fetch_all(city)

            except SourceUnavailableError as e:
                logger.error(
                    f"Scrape failed for {source} in {city}: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                run.status = JobStatus.FAILED.value
                run.error_message = e.message
                run.error_details = [e.to_dict()]
                self._finish_run(run)
                await session.commit()
                return self._run_summary(run), changed

            normalizer = RecordNormalizer(source, city)
            loader = RawRecordLoader(session)
            for entity_type, items in payloads.items():
                run.records_fetched += len(items)
                normalized = normalizer.normalize_many(entity_type, items)
                errors.extend(normalized.errors)
                run.records_failed += len(normalized.errors)

                loaded = await loader.load(normalized.records)
                run.records_inserted += loaded.inserted
                run.records_updated += loaded.updated
                run.records_unchanged += loaded.unchanged
                changed[EntityType(entity_type)].extend((raw.id, fields) for raw, fields in loaded.changed)

            run.status = JobStatus.PARTIAL.value if errors else JobStatus.SUCCESS.value
            run.error_message = f"{len(errors)} records failed normalization" if errors else None
            run.error_details = errors[:50] or None
            self._finish_run(run)
            await session.commit()

            logger.info(
                f"Scraped {source} for {city}: fetched={run.records_fetched}, "
                f"inserted={run.records_inserted}, updated={run.records_updated}, "
                f"unchanged={run.records_unchanged}, failed={run.records_failed}"
            )
            return self._run_summary(run), changed

    @staticmethod
    def _finish_run(run: SourceRun) -> None:
        run.completed_at = datetime.utcnow()
        run.duration_seconds = (run.completed_at - run.started_at).total_seconds()

    @staticmethod
    def _run_summary(run: SourceRun) -> Dict[str, Any]:
        return {
            "city": run.city,
            "source": run.source,
            "status": run.status,
            "records_fetched": run.records_fetched,
            "records_inserted": run.records_inserted,
            "records_updated": run.records_updated,
            "records_unchanged": run.records_unchanged,
            "records_failed": run.records_failed,
            "error_message": run.error_message,
        }

    async def _gather(self, coroutines):
        if self.parallel:
            return await asyncio.gather(*coroutines)
        return [await coroutine for coroutine in coroutines]

    async def _match_type(self, entity_type: EntityType, changed: ChangedRecords) -> Dict[str, Any]:
        async with self.session_factory() as session:
            service = MatchService(session, entity_type, self.matcher)
            stats = await service.apply_rescrapes(changed.get(entity_type, []))
            await service.match_pending(stats=stats)
            return stats.to_dict()

    async def _match(self, changed: ChangedRecords) -> Dict[str, Any]:
        types = [EntityType.VENUE, EntityType.ARTIST, EntityType.EVENT]
        results = await self._gather([self._match_type(t, changed) for t in types])
        return {t.value: r for t, r in zip(types, results)}

    async def _resolve_references(self) -> Dict[str, int]:
        async with self.session_factory() as session:
            return await MatchService(session, EntityType.EVENT, self.matcher).resolve_event_references()

    async def _enrich(self) -> Dict[str, Any]:
        async with self.session_factory() as session:
            enricher = ArtistEnricher(session, client=self.musicbrainz)
            return (await enricher.run()).to_dict()

    async def _dedupe_type(self, entity_type: EntityType) -> Dict[str, Any]:
        async with self.session_factory() as session:
            return (await Deduplicator(session, entity_type, self.matcher).run()).to_dict()

    async def _dedupe(self) -> Dict[str, Any]:
        """Venues and artists first (independent), then events"""
        venues, artists = await self._gather([
            self._dedupe_type(EntityType.VENUE),
            self._dedupe_type(EntityType.ARTIST),
        ])
        events = await self._dedupe_type(EntityType.EVENT)
        return {"venue": venues, "artist": artists, "event": events}

    async def run_dedupe(self, entity_types: Optional[Sequence[EntityType]] = None) -> Dict[str, Any]:
        """Standalone dedup outside a sync job"""
        if entity_types is None:
            return await self._dedupe()
        return {EntityType(t).value: await self._dedupe_type(EntityType(t)) for t in entity_types}

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self) -> Dict[str, Any]:
        """Running job snapshot, or idle with the most recent job"""
        async with self.session_factory() as session:
            running = await self._running_job(session)
            if running is not None:
                return running.snapshot()

            result = await session.execute(
                select(SyncJob).order_by(SyncJob.started_at.desc(), SyncJob.id.desc()).limit(1)
            )
            last = result.scalar_one_or_none()
            return {"status": "idle", "last_job": last.snapshot() if last else None}

    async def get_job(self, job_id: int) -> Dict[str, Any]:
        async with self.session_factory() as session:
            job = await session.get(SyncJob, job_id)
            if job is None:
                raise RecordNotFoundError(f"Sync job {job_id} not found", context={"job_id": job_id})
            return job.snapshot()

    async def reset_stale_jobs(self, lease_seconds: Optional[int] = None) -> int:
        """Fail running jobs whose heartbeat is older than the lease"""
        lease = timedelta(seconds=lease_seconds if lease_seconds is not None else settings.SYNC_JOB_LEASE_SECONDS)
        cutoff = datetime.utcnow() - lease
        async with self.session_factory() as session:
            result = await session.execute(
                update(SyncJob)
                .where(SyncJob.status == JobStatus.RUNNING.value, SyncJob.heartbeat_at < cutoff)
                .values(
                    status=JobStatus.FAILED.value,
                    error_message="Lease expired without heartbeat",
                    completed_at=datetime.utcnow(),
                )
            )
            await session.commit()
            count = result.rowcount or 0

        if count:
            logger.warning(f"Reset {count} stale sync job(s)")
        return count

    async def close(self) -> None:
        for connector in self.connectors.values():
            await connector.close()
