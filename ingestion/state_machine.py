"""
Run State Machine - legal status transitions for sync runs.

    idle → running → continuing ⟲ → completed | completed_with_errors | failed | cancelled
                  ↘ paused → cancelled

A failed or paused run whose checkpoint is resumable may be resumed; this
creates a new run id carrying the old checkpoint and marks the old run as
superseded. The old row is never written again.

Every transition is a guarded update on the stored row, so a cancel issued by
an operator and a finish issued by the owning executor cannot both win.
"""

from typing import Dict, FrozenSet, List, Optional, Any
from datetime import timedelta
import logging
import uuid

from core.exceptions import InvalidTransitionError, RunNotFoundError, RunNotResumableError
from ingestion.checkpoint_store import CheckpointStore
from models.base import ACTIVE_STATUSES, TERMINAL_STATUSES, RunStatus, SyncSource, utcnow
from models.sync_run import SyncRun
from schemas.checkpoint import CheckpointBase, parse_checkpoint

logger = logging.getLogger(__name__)

CANCEL_REASON = "Cancelled by user"
AUTOMATIC_KILL_REASON = "Stale run terminated by automatic sweep"
MANUAL_KILL_REASON = "Manual kill forced by operator"

_WORKING_TARGETS = frozenset({
    RunStatus.CONTINUING,
    RunStatus.PAUSED,
    RunStatus.COMPLETED,
    RunStatus.COMPLETED_WITH_ERRORS,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
})

TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.IDLE: frozenset({RunStatus.RUNNING}),
    RunStatus.RUNNING: _WORKING_TARGETS,
    RunStatus.CONTINUING: _WORKING_TARGETS,
    RunStatus.PAUSED: frozenset({RunStatus.CANCELLED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.COMPLETED_WITH_ERRORS: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}

FINISH_OUTCOMES = frozenset({RunStatus.COMPLETED, RunStatus.COMPLETED_WITH_ERRORS, RunStatus.FAILED})
RESUMABLE_STATUSES = frozenset({RunStatus.FAILED, RunStatus.PAUSED})


def can_transition(from_status: RunStatus, to_status: RunStatus) -> bool:
    return to_status in TRANSITIONS.get(from_status, frozenset())


def statuses_leading_to(to_status: RunStatus) -> FrozenSet[RunStatus]:
    """Every status from which ``to_status`` may be entered."""
    return frozenset(s for s, targets in TRANSITIONS.items() if to_status in targets)


class RunStateMachine:
    """Governs every status change of SyncRun rows."""

    def __init__(self, store: CheckpointStore):
        self.store = store

    async def start(
        self,
        source: SyncSource,
        dry_run: bool = False,
        options: Optional[Dict[str, Any]] = None,
        checkpoint: Optional[CheckpointBase] = None
    ) -> SyncRun:
        """
        Create a run in ``running``.

        Raises:
            AlreadyRunningError: The source already has a running/continuing run
        """
        return await self.store.create_run(source, dry_run=dry_run, options=options, checkpoint=checkpoint)

    async def advance(
        self,
        run_id: uuid.UUID,
        checkpoint: CheckpointBase,
        fetched: int = 0,
        inserted: int = 0,
        updated: int = 0
    ) -> RunStatus:
        """
        Record one completed chunk.

        Returns the status observed in the same transaction, so a cancel that
        landed while the chunk ran is seen at this chunk boundary.
        """
        return await self.store.write_progress(
            run_id, checkpoint, fetched=fetched, inserted=inserted, updated=updated
        )

    async def record_chunk_failure(
        self,
        run_id: uuid.UUID,
        checkpoint: CheckpointBase,
        error_message: str
    ) -> RunStatus:
        """Persist the failure counter and partial error without counting any work."""
        return await self.store.write_progress(run_id, checkpoint, error_message=error_message)

    async def finish(
        self,
        run_id: uuid.UUID,
        outcome: RunStatus,
        error_message: Optional[str] = None,
        checkpoint: Optional[CheckpointBase] = None
    ) -> bool:
        """
        Move an active run to a terminal outcome.

        Returns:
            False when the run was no longer active (e.g. cancelled meanwhile)
        """
        if outcome not in FINISH_OUTCOMES:
            raise InvalidTransitionError(
                f"{outcome.value} is not a finish outcome",
                context={"run_id": str(run_id), "to_status": outcome.value}
            )

        if checkpoint is not None:
            await self.store.write_checkpoint(run_id, checkpoint)

        values: Dict[str, Any] = {"completed_at": utcnow()}
        if error_message is not None:
            values["error_message"] = error_message

        finished = await self.store.compare_and_set_status(
            run_id, outcome, statuses_leading_to(outcome) & ACTIVE_STATUSES, **values
        )
        if finished:
            logger.info(f"Sync run {run_id} finished as {outcome.value}")
        else:
            logger.info(f"Sync run {run_id} was no longer active; finish as {outcome.value} skipped")
        return finished

    async def cancel(self, run_id: uuid.UUID, reason: str = CANCEL_REASON) -> bool:
        """
        Request cooperative termination of one run.

        Idempotent: cancelling a finished or already cancelled run returns False.

        Raises:
            RunNotFoundError: Unknown run id
        """
        status = await self.store.read_status(run_id)
        if status is None:
            raise RunNotFoundError("Sync run not found", context={"run_id": str(run_id)})
        if status in TERMINAL_STATUSES:
            return False

        cancelled = await self.store.compare_and_set_status(
            run_id,
            RunStatus.CANCELLED,
            statuses_leading_to(RunStatus.CANCELLED),
            completed_at=utcnow(),
            termination_reason=reason
        )
        if cancelled:
            logger.warning(f"Sync run {run_id} cancelled: {reason}")
        return cancelled

    async def cancel_source(
        self,
        source: Optional[SyncSource] = None,
        reason: str = CANCEL_REASON
    ) -> List[uuid.UUID]:
        """Cancel every non-terminal run of ``source``, or of every source when None."""
        cancelled = await self.store.bulk_set_status(
            RunStatus.CANCELLED,
            statuses_leading_to(RunStatus.CANCELLED),
            source=source,
            completed_at=utcnow(),
            termination_reason=reason
        )
        if cancelled:
            scope = source.value if source is not None else "all sources"
            logger.warning(f"Cancelled {len(cancelled)} sync run(s) for {scope}")
        return cancelled

    async def pause(self, run_id: uuid.UUID) -> bool:
        """
        Ask an active run to stop at its next chunk boundary, keeping it resumable.

        Raises:
            RunNotFoundError: Unknown run id
        """
        status = await self.store.read_status(run_id)
        if status is None:
            raise RunNotFoundError("Sync run not found", context={"run_id": str(run_id)})

        paused = await self.store.compare_and_set_status(
            run_id, RunStatus.PAUSED, statuses_leading_to(RunStatus.PAUSED)
        )
        if paused:
            logger.info(f"Sync run {run_id} paused")
        return paused

    async def force_kill_stale(
        self,
        threshold_seconds: int,
        manual: bool = False,
        source: Optional[SyncSource] = None
    ) -> List[uuid.UUID]:
        """
        Fail every running/continuing run idle for longer than ``threshold_seconds``.

        Runs whose worker died never update their own row; without this sweep
        they would block new runs of their source forever.
        """
        reason = MANUAL_KILL_REASON if manual else AUTOMATIC_KILL_REASON
        cutoff = utcnow() - timedelta(seconds=threshold_seconds)
        killed = await self.store.bulk_set_status(
            RunStatus.FAILED,
            ACTIVE_STATUSES,
            source=source,
            inactive_since=cutoff,
            completed_at=utcnow(),
            error_message=reason,
            termination_reason=reason
        )
        if killed:
            logger.warning(
                f"Force-killed {len(killed)} stale sync run(s) "
                f"(threshold={threshold_seconds}s, manual={manual})"
            )
        return killed

    async def resume(self, run_id: uuid.UUID) -> SyncRun:
        """
        Start a new run continuing a failed or paused one from its checkpoint.

        Raises:
            RunNotFoundError: Unknown run id
            RunNotResumableError: Wrong status, already superseded, or no resumable checkpoint
            AlreadyRunningError: The source has another active run
        """
        old = await self.store.get(run_id)
        if old is None:
            raise RunNotFoundError("Sync run not found", context={"run_id": str(run_id)})

        context = {"run_id": str(run_id), "status": old.status.value}
        if old.status not in RESUMABLE_STATUSES:
            raise RunNotResumableError("Only failed or paused runs can be resumed", context=context)
        if old.superseded_by_id is not None:
            context["superseded_by"] = str(old.superseded_by_id)
            raise RunNotResumableError("Run has already been resumed", context=context)

        checkpoint = parse_checkpoint(old.checkpoint)
        if checkpoint is None or not checkpoint.is_resumable():
            raise RunNotResumableError("Run has no resumable checkpoint", context=context)

        fresh = checkpoint.model_copy(update={"consecutive_failures": 0, "last_activity_at": utcnow()})
        new_run = await self.store.create_run(
            old.source,
            dry_run=old.dry_run,
            options=old.options,
            checkpoint=fresh,
            supersedes=old.id
        )
        logger.info(
            f"Resumed sync run {old.id} as {new_run.id} "
            f"(source={old.source.value}, running_total={checkpoint.running_total})"
        )
        return new_run

    async def status(self, run_id: uuid.UUID) -> Optional[RunStatus]:
        return await self.store.read_status(run_id)
