"""
Run one sync job in the foreground (cron/one-off use)

    python scripts/run_sync.py --city berlin --city hamburg --source ra --enrich --dedupe
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.logging import setup_logging
from ingestion.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Scrape, match and reconcile catalog records")
    parser.add_argument("--city", dest="cities", action="append", help="City to scrape (repeatable)")
    parser.add_argument("--source", dest="sources", action="append", help="Source to scrape (repeatable)")
    parser.add_argument("--enrich", action="store_true", help="Enrich artists from MusicBrainz afterwards")
    parser.add_argument("--dedupe", action="store_true", help="Deduplicate canonical records afterwards")
    return parser.parse_args(argv)


async def run_sync(args) -> int:
    orchestrator = SyncOrchestrator()
    try:
        snapshot, started = await orchestrator.trigger_sync(
            cities=args.cities,
            sources=args.sources,
            enrich_after=args.enrich,
            dedupe_after=args.dedupe,
            requested_by="cli"
        )
        if not started:
            logger.warning(f"Sync job {snapshot['job_id']} is already running; nothing to do")
            return 1

        await orchestrator.run_job(snapshot["job_id"])
        job = await orchestrator.get_job(snapshot["job_id"])
        logger.info(f"Sync job {job['job_id']} finished: {job['status']}")
        return 0

    except Exception as e:
        logger.error(f"Sync failed: {str(e)}")
        return 1
    finally:
        await orchestrator.close()


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(run_sync(parse_args())))
