import uuid
import pytest
from unittest.mock import AsyncMock, MagicMock
from ingestion.scheduler import SyncScheduler
from models.base import ProcessingStatus, SyncSource
from models.staged_record import StagedRecord


async def _stage_pending(session_factory):
    async with session_factory() as session:
        session.add(StagedRecord(
            source_type=SyncSource.CRM,
            import_id=uuid.uuid4(),
            email="pending@example.com",
            processing_status=ProcessingStatus.PENDING,
        ))
        await session.commit()


@pytest.mark.asyncio
async def test_scheduler_registers_jobs(runner):
    scheduler = SyncScheduler(runner)
    scheduler.start()
    try:
        job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        assert job_ids == {"zombie_sweep", "bulk_unify", "run_retention"}
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_sweep_job_is_automatic(runner):
    runner.force_kill_zombies = AsyncMock(return_value=[])
    scheduler = SyncScheduler(runner)

    await scheduler.sweep_job()

    runner.force_kill_zombies.assert_awaited_once_with(manual=False)


@pytest.mark.asyncio
async def test_sweep_job_swallows_errors(runner):
    runner.force_kill_zombies = AsyncMock(side_effect=RuntimeError("db down"))
    scheduler = SyncScheduler(runner)

    await scheduler.sweep_job()


@pytest.mark.asyncio
async def test_merge_job_skips_when_nothing_pending(runner):
    runner.run_merge = AsyncMock()
    scheduler = SyncScheduler(runner)

    await scheduler.merge_job()

    runner.run_merge.assert_not_awaited()


@pytest.mark.asyncio
async def test_merge_job_starts_merge(runner, session_factory):
    await _stage_pending(session_factory)
    runner.run_merge = AsyncMock(return_value=MagicMock(id=uuid.uuid4()))
    scheduler = SyncScheduler(runner)

    await scheduler.merge_job()

    runner.run_merge.assert_awaited_once()


@pytest.mark.asyncio
async def test_merge_job_skips_while_merge_active(runner, session_factory):
    await _stage_pending(session_factory)
    await runner.state.start(SyncSource.BULK_UNIFY)
    runner.run_merge = AsyncMock()
    scheduler = SyncScheduler(runner)

    await scheduler.merge_job()

    runner.run_merge.assert_not_awaited()


@pytest.mark.asyncio
async def test_retention_job(runner):
    runner.cleanup_old_runs = AsyncMock(return_value=3)
    scheduler = SyncScheduler(runner)

    await scheduler.retention_job()

    runner.cleanup_old_runs.assert_awaited_once_with()
