"""
Script to run one coordinated sync of the configured sources

Usage:
    python scripts/run_sync.py [source ...]

With no arguments every ingestion source is synced, then pending staged
records are merged into canonical customers.
"""

import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.logging import setup_logging
from ingestion.command_center import CommandCenter
from ingestion.runner import SyncRunner
from models.base import SyncSource

setup_logging()
logger = logging.getLogger(__name__)


async def run_sync(source_names):
    """Run the command center once and report each child run"""
    runner = SyncRunner()
    command_center = CommandCenter(runner)
    sources = [SyncSource(name) for name in source_names] or None

    try:
        finished, report = await command_center.run(sources=sources, mode=os.getenv("SYNC_MODE", "today"))

        for child in report.children:
            outcome = "skipped" if child.skipped else (child.status.value if child.status else child.error)
            logger.info(
                f"{child.source.value}: {outcome} "
                f"(fetched={child.fetched}, inserted={child.inserted})"
            )
        logger.info(f"Command center run {finished.id} finished as {finished.status.value}")
        return 0 if finished.status.value == "completed" else 1
    finally:
        await runner.shutdown()


if __name__ == "__main__":
    sys.exit(asyncio.run(run_sync(sys.argv[1:])))
