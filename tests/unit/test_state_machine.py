"""
Unit tests for the run state machine
"""

import asyncio
import pytest
from core.exceptions import (
    AlreadyRunningError,
    CheckpointError,
    InvalidTransitionError,
    RunNotFoundError,
    RunNotResumableError,
)
from ingestion.state_machine import (
    AUTOMATIC_KILL_REASON,
    CANCEL_REASON,
    MANUAL_KILL_REASON,
    can_transition,
)
from models.base import RunStatus, SyncSource
from schemas.checkpoint import ChunkCheckpoint, CursorCheckpoint, parse_checkpoint
import uuid


class TestTransitions:
    """Static transition table"""

    def test_allowed_transitions(self):
        assert can_transition(RunStatus.IDLE, RunStatus.RUNNING)
        assert can_transition(RunStatus.RUNNING, RunStatus.CONTINUING)
        assert can_transition(RunStatus.CONTINUING, RunStatus.COMPLETED)
        assert can_transition(RunStatus.RUNNING, RunStatus.PAUSED)
        assert can_transition(RunStatus.PAUSED, RunStatus.CANCELLED)

    def test_terminal_statuses_are_final(self):
        for terminal in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED):
            assert not can_transition(terminal, RunStatus.RUNNING)
            assert not can_transition(terminal, RunStatus.CONTINUING)
        assert not can_transition(RunStatus.PAUSED, RunStatus.RUNNING)


class TestRunLifecycle:
    """Start, progress and finish"""

    @pytest.mark.asyncio
    async def test_start_rejects_second_active_run(self, state):
        """Only one running/continuing run per source"""
        run = await state.start(SyncSource.PAYMENT_A)
        assert run.status == RunStatus.RUNNING

        with pytest.raises(AlreadyRunningError) as exc_info:
            await state.start(SyncSource.PAYMENT_A)
        assert exc_info.value.active_run_id == run.id

        # Other sources are independent
        other = await state.start(SyncSource.CRM)
        assert other.source == SyncSource.CRM

    @pytest.mark.asyncio
    async def test_advance_moves_to_continuing_and_counts(self, state, store):
        run = await state.start(SyncSource.PAYMENT_A, checkpoint=CursorCheckpoint())

        status = await state.advance(
            run.id, CursorCheckpoint(cursor="p1", running_total=100, chunk_index=1),
            fetched=100, inserted=100
        )
        assert status == RunStatus.CONTINUING

        stored = await store.get(run.id)
        assert stored.total_fetched == 100
        assert stored.total_inserted == 100
        assert parse_checkpoint(stored.checkpoint).cursor == "p1"

    @pytest.mark.asyncio
    async def test_advance_rejects_decreasing_progress(self, state):
        """Running total never goes backwards"""
        run = await state.start(SyncSource.PAYMENT_A)
        await state.advance(run.id, CursorCheckpoint(cursor="p2", running_total=200))

        with pytest.raises(CheckpointError):
            await state.advance(run.id, CursorCheckpoint(cursor="p1", running_total=100))

    @pytest.mark.asyncio
    async def test_advance_unknown_run(self, state):
        with pytest.raises(RunNotFoundError):
            await state.advance(uuid.uuid4(), CursorCheckpoint())

    @pytest.mark.asyncio
    async def test_finish_and_free_source(self, state, store):
        """A finished run frees its source for a new start"""
        run = await state.start(SyncSource.CRM)
        assert await state.finish(run.id, RunStatus.COMPLETED) is True

        stored = await store.get(run.id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.completed_at is not None

        again = await state.start(SyncSource.CRM)
        assert again.id != run.id

    @pytest.mark.asyncio
    async def test_finish_rejects_non_outcome(self, state):
        run = await state.start(SyncSource.CRM)
        with pytest.raises(InvalidTransitionError):
            await state.finish(run.id, RunStatus.PAUSED)


class TestCancellation:
    """Cancel is idempotent and wins over a late finish"""

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, state, store):
        run = await state.start(SyncSource.PAYMENT_B)

        assert await state.cancel(run.id) is True
        assert await state.cancel(run.id) is False

        stored = await store.get(run.id)
        assert stored.status == RunStatus.CANCELLED
        assert stored.termination_reason == CANCEL_REASON

    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self, state):
        with pytest.raises(RunNotFoundError):
            await state.cancel(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_finish_after_cancel_is_skipped(self, state, store):
        """An executor finishing late cannot overwrite the cancel"""
        run = await state.start(SyncSource.PAYMENT_B)
        await state.cancel(run.id)

        assert await state.finish(run.id, RunStatus.COMPLETED) is False
        assert (await store.get(run.id)).status == RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_progress_after_cancel_still_counted(self, state, store):
        """The chunk in flight at cancel time keeps its counters"""
        run = await state.start(SyncSource.PAYMENT_B)
        await state.cancel(run.id)

        status = await state.advance(run.id, CursorCheckpoint(cursor="p1", running_total=50), inserted=50)
        assert status == RunStatus.CANCELLED
        assert (await store.get(run.id)).total_inserted == 50

    @pytest.mark.asyncio
    async def test_cancel_source(self, state):
        first = await state.start(SyncSource.PAYMENT_A)
        second = await state.start(SyncSource.CRM)

        cancelled = await state.cancel_source(SyncSource.PAYMENT_A)
        assert cancelled == [first.id]

        cancelled = await state.cancel_source(None)
        assert cancelled == [second.id]


class TestPauseAndResume:
    """Resume creates a new run from the checkpoint"""

    @pytest.mark.asyncio
    async def test_pause_then_resume_supersedes(self, state, store):
        run = await state.start(SyncSource.CHAT_PLATFORM, options={"max_pages": 5}, checkpoint=ChunkCheckpoint(total_chunks=6))
        await state.advance(run.id, ChunkCheckpoint(total_chunks=6, chunk_index=3, running_total=1650), inserted=1650)
        assert await state.pause(run.id) is True

        resumed = await state.resume(run.id)
        assert resumed.id != run.id
        assert resumed.resumed_from_id == run.id
        assert resumed.options == {"max_pages": 5}

        checkpoint = parse_checkpoint(resumed.checkpoint)
        assert checkpoint.chunk_index == 3
        assert checkpoint.running_total == 1650

        old = await store.get(run.id)
        assert old.superseded_by_id == resumed.id
        assert old.status == RunStatus.PAUSED

    @pytest.mark.asyncio
    async def test_second_resume_rejected(self, state):
        """A run can be resumed only once"""
        run = await state.start(SyncSource.CRM, checkpoint=CursorCheckpoint(cursor="p3", running_total=30))
        await state.finish(run.id, RunStatus.FAILED, error_message="boom")

        resumed = await state.resume(run.id)
        await state.finish(resumed.id, RunStatus.COMPLETED)

        with pytest.raises(RunNotResumableError):
            await state.resume(run.id)

    @pytest.mark.asyncio
    async def test_resume_completed_run_rejected(self, state):
        run = await state.start(SyncSource.CRM, checkpoint=CursorCheckpoint(cursor="p3"))
        await state.finish(run.id, RunStatus.COMPLETED)

        with pytest.raises(RunNotResumableError):
            await state.resume(run.id)

    @pytest.mark.asyncio
    async def test_resume_without_resumable_checkpoint(self, state):
        run = await state.start(SyncSource.CRM, checkpoint=CursorCheckpoint(cursor=None))
        await state.finish(run.id, RunStatus.FAILED)

        with pytest.raises(RunNotResumableError):
            await state.resume(run.id)

    @pytest.mark.asyncio
    async def test_resume_blocked_by_active_run(self, state):
        run = await state.start(SyncSource.CRM, checkpoint=CursorCheckpoint(cursor="p1"))
        await state.finish(run.id, RunStatus.FAILED)
        await state.start(SyncSource.CRM)

        with pytest.raises(AlreadyRunningError):
            await state.resume(run.id)

    @pytest.mark.asyncio
    async def test_paused_run_cannot_be_paused_again(self, state):
        run = await state.start(SyncSource.CRM)
        assert await state.pause(run.id) is True
        assert await state.pause(run.id) is False

    @pytest.mark.asyncio
    async def test_superseded_run_is_frozen(self, state, store):
        """A worker outliving a forced kill cannot write to the run that was resumed"""
        run = await state.start(SyncSource.PAYMENT_A, checkpoint=CursorCheckpoint(cursor="p0"))
        await state.advance(run.id, CursorCheckpoint(cursor="p1", running_total=10), fetched=10, inserted=10)
        await asyncio.sleep(0.01)
        assert await state.force_kill_stale(0) == [run.id]
        resumed = await state.resume(run.id)

        status = await state.advance(run.id, CursorCheckpoint(cursor="p2", running_total=20), fetched=10, inserted=10)
        assert status == RunStatus.FAILED
        assert await state.finish(run.id, RunStatus.COMPLETED, checkpoint=CursorCheckpoint(cursor="p9", running_total=90)) is False
        assert await state.cancel_source(SyncSource.PAYMENT_A) == [resumed.id]

        old = await store.get(run.id)
        assert old.total_inserted == 10
        assert old.total_fetched == 10
        assert old.status == RunStatus.FAILED
        assert parse_checkpoint(old.checkpoint).cursor == "p1"


class TestZombieSweep:
    """Stale runs are failed with a reason"""

    @pytest.mark.asyncio
    async def test_force_kill_reasons(self, state, store):
        automatic = await state.start(SyncSource.PAYMENT_A)
        manual = await state.start(SyncSource.CRM)
        await asyncio.sleep(0.01)

        killed = await state.force_kill_stale(0, source=SyncSource.PAYMENT_A)
        assert killed == [automatic.id]
        killed = await state.force_kill_stale(0, manual=True)
        assert killed == [manual.id]

        stored = await store.get(automatic.id)
        assert stored.status == RunStatus.FAILED
        assert stored.termination_reason == AUTOMATIC_KILL_REASON
        assert (await store.get(manual.id)).termination_reason == MANUAL_KILL_REASON

    @pytest.mark.asyncio
    async def test_recent_runs_survive_sweep(self, state):
        await state.start(SyncSource.PAYMENT_A)
        assert await state.force_kill_stale(3600) == []
