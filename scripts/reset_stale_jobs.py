"""
Fail sync jobs whose heartbeat lease has expired so a new sync can start
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


async def reset(lease_seconds):
    orchestrator = SyncOrchestrator(connectors={})
    count = await orchestrator.reset_stale_jobs(lease_seconds=lease_seconds)
    logger.info(f"Reset {count} stale sync job(s)")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--lease-seconds", type=int, default=None, help="Override SYNC_JOB_LEASE_SECONDS")
    setup_logging()
    asyncio.run(reset(parser.parse_args().lease_seconds))
