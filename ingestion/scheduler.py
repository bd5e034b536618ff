import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, func
from core.config import settings
from core.exceptions import SyncException
from ingestion.runner import SyncRunner
from models.base import ProcessingStatus, SyncSource
from models.staged_record import StagedRecord

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Periodic housekeeping: zombie sweep, bulk-unify merge, run retention."""

    def __init__(self, runner: SyncRunner):
        self.runner = runner
        self.scheduler = AsyncIOScheduler()

    async def sweep_job(self):
        """Fail runs whose worker stopped updating them"""
        try:
            killed = await self.runner.force_kill_zombies(manual=False)
            if killed:
                logger.warning(f"Scheduler: swept {len(killed)} stale run(s)")
        except Exception as e:
            logger.error(f"Scheduler: zombie sweep failed - {e}")

    async def merge_job(self):
        """Merge pending staged records when no merge is already active"""
        try:
            if await self.runner.store.active_run(SyncSource.BULK_UNIFY) is not None:
                logger.info("Scheduler: merge already active, skipping")
                return

            async with self.runner.session_factory() as session:
                pending = await session.scalar(
                    select(func.count()).select_from(StagedRecord)
                    .where(StagedRecord.processing_status == ProcessingStatus.PENDING)
                )
            if not pending:
                return

            run = await self.runner.run_merge()
            logger.info(f"Scheduler: started merge run {run.id} for {pending} pending record(s)")
        except SyncException as e:
            logger.info(f"Scheduler: merge not started - {e.message}")
        except Exception as e:
            logger.error(f"Scheduler: merge job failed - {e}")

    async def retention_job(self):
        """Delete finished runs past the retention window"""
        try:
            await self.runner.cleanup_old_runs()
        except Exception as e:
            logger.error(f"Scheduler: retention cleanup failed - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.sweep_job,
            trigger=IntervalTrigger(minutes=settings.SWEEP_INTERVAL_MINUTES),
            id="zombie_sweep",
            replace_existing=True
        )
        self.scheduler.add_job(
            self.merge_job,
            trigger=IntervalTrigger(minutes=settings.MERGE_INTERVAL_MINUTES),
            id="bulk_unify",
            replace_existing=True
        )
        self.scheduler.add_job(
            self.retention_job,
            trigger=IntervalTrigger(hours=settings.RETENTION_INTERVAL_HOURS),
            id="run_retention",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info("Sync Scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Sync Scheduler stopped")
