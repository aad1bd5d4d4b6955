import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from core.database import async_session_maker
from ingestion.orchestrator import SyncOrchestrator
from reconciliation.publishing import PublishWorkflow

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, orchestrator: SyncOrchestrator = None, session_factory=None):
        self.scheduler = AsyncIOScheduler()
        self.session_factory = session_factory or async_session_maker
        self.orchestrator = orchestrator or SyncOrchestrator(session_factory=self.session_factory)

    async def run_sync_job(self):
        """Nightly sync of the configured cities and sources"""
        logger.info("Scheduler: Starting nightly sync")
        try:
            snapshot, started = await self.orchestrator.trigger_sync(
                enrich_after=True,
                dedupe_after=True,
                requested_by="scheduler"
            )
            if not started:
                logger.info(f"Scheduler: Sync job {snapshot['job_id']} already running, skipping")
                return
            await self.orchestrator.run_job(snapshot["job_id"])
        except Exception as e:
            logger.error(f"Scheduler: Sync job failed - {e}")

    async def run_expiry_job(self):
        """Reject events whose date has passed and fail stale sync jobs"""
        try:
            await self.orchestrator.reset_stale_jobs()
            async with self.session_factory() as session:
                expired = await PublishWorkflow(session).expire_past_events()
            logger.info(f"Scheduler: Expiry sweep rejected {len(expired)} event(s)")
        except Exception as e:
            logger.error(f"Scheduler: Expiry sweep failed - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_sync_job,
            trigger=CronTrigger(hour=settings.NIGHTLY_SYNC_HOUR, minute=0),
            id="nightly_sync",
            replace_existing=True
        )
        self.scheduler.add_job(
            self.run_expiry_job,
            trigger=IntervalTrigger(minutes=settings.EXPIRY_SWEEP_MINUTES),
            id="expiry_sweep",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info("Sync Scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Sync Scheduler stopped")
