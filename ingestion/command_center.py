"""
Command center: one coordinated sync of several sources, optionally followed
by a bulk-unify merge.

The coordination itself is recorded as a ``command-center`` run whose chunks
are the child sources, so it shows up (and can be cancelled) like any other
run. Children are ordinary source runs started independently; a source that
is already running is skipped rather than failing the whole command.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
import asyncio
import logging
import uuid

from core.config import settings
from core.exceptions import AlreadyRunningError, SyncException
from ingestion.runner import SyncRunner
from models.base import ACTIVE_STATUSES, INGESTION_SOURCES, RunStatus, SyncSource
from models.sync_run import SyncRun
from schemas.checkpoint import ChunkCheckpoint

logger = logging.getLogger(__name__)

MODE_PAGE_CAPS: Dict[str, int] = {
    "today": 5,
    "full": 20,
}

HEARTBEAT_SECONDS = 30.0


@dataclass
class ChildOutcome:
    source: SyncSource
    run_id: Optional[uuid.UUID] = None
    status: Optional[RunStatus] = None
    skipped: bool = False
    error: Optional[str] = None
    fetched: int = 0
    inserted: int = 0
    updated: int = 0

    @property
    def clean(self) -> bool:
        return self.status == RunStatus.COMPLETED


@dataclass
class CommandCenterReport:
    run_id: uuid.UUID
    children: List[ChildOutcome] = field(default_factory=list)
    merge_run_id: Optional[uuid.UUID] = None
    merge_status: Optional[RunStatus] = None


class CommandCenter:
    """
    Coordinated multi-source sync.

    Attributes:
        runner: Runner used to start and await child runs
        stale_seconds: Runs idle longer than this are killed before starting
    """

    def __init__(self, runner: SyncRunner, stale_seconds: Optional[int] = None):
        self.runner = runner
        self.state = runner.state
        self.stale_seconds = stale_seconds if stale_seconds is not None else settings.COMMAND_CENTER_STALE_SECONDS

    async def start(
        self,
        sources: Optional[Sequence[SyncSource]] = None,
        mode: str = "today",
        dry_run: bool = False,
        merge_after: bool = True
    ) -> SyncRun:
        """
        Record a command-center run and coordinate it in the background.

        Raises:
            SyncPausedError: Kill switch engaged
            AlreadyRunningError: Another command-center run is active
            ValueError: Unknown mode or a non-ingestion source
        """
        run, _ = await self._launch(sources, mode, dry_run, merge_after)
        return run

    async def run(
        self,
        sources: Optional[Sequence[SyncSource]] = None,
        mode: str = "today",
        dry_run: bool = False,
        merge_after: bool = True
    ) -> Tuple[SyncRun, CommandCenterReport]:
        """
        Start a command-center run and wait for it.

        Returns:
            The finished run and the per-source report of how it went
        """
        run, task = await self._launch(sources, mode, dry_run, merge_after)
        report = await task
        return await self.runner.get_run_status(run.id), report

    async def _launch(
        self,
        sources: Optional[Sequence[SyncSource]],
        mode: str,
        dry_run: bool,
        merge_after: bool
    ) -> Tuple[SyncRun, asyncio.Task]:
        if mode not in MODE_PAGE_CAPS:
            raise ValueError(f"Unknown command center mode: {mode}")
        sources = list(sources or INGESTION_SOURCES)
        for source in sources:
            if source not in INGESTION_SOURCES:
                raise ValueError(f"{source.value} cannot be started by the command center")

        await self.runner.ensure_not_paused()

        swept = await self.state.force_kill_stale(self.stale_seconds)
        if swept:
            logger.warning(f"Command center swept {len(swept)} stale run(s) before starting")

        options = {
            "sources": [s.value for s in sources],
            "mode": mode,
            "merge_after": merge_after,
        }
        run = await self.state.start(
            SyncSource.COMMAND_CENTER,
            dry_run=dry_run,
            options=options,
            checkpoint=ChunkCheckpoint(total_chunks=len(sources))
        )
        task = self.runner.track(run, self._coordinate(run, sources, mode, dry_run, merge_after))
        logger.info(f"Command center run {run.id} started for {options['sources']} (mode={mode})")
        return run, task

    async def _coordinate(
        self,
        run: SyncRun,
        sources: List[SyncSource],
        mode: str,
        dry_run: bool,
        merge_after: bool
    ) -> CommandCenterReport:
        report = CommandCenterReport(run_id=run.id)
        checkpoint = ChunkCheckpoint(total_chunks=len(sources))
        child_options = {"max_pages": MODE_PAGE_CAPS[mode]}

        try:
            for index, source in enumerate(sources):
                status = await self.state.status(run.id)
                if status not in ACTIVE_STATUSES:
                    logger.info(f"Command center run {run.id} is {status.value if status else 'gone'}; not starting {source.value}")
                    return report

                child = ChildOutcome(source=source)
                report.children.append(child)
                try:
                    child_run = await self.runner.start_sync(source, dry_run=dry_run, options=dict(child_options))
                    child.run_id = child_run.id
                except AlreadyRunningError as e:
                    child.skipped = True
                    child.error = e.message
                    logger.info(f"Command center: {source.value} already running, skipped")
                except SyncException as e:
                    child.error = e.message
                    logger.warning(f"Command center: {source.value} could not start: {e.message}")

                failed = [] if child.run_id else [index]
                checkpoint = checkpoint.model_copy(update={
                    "chunk_index": index + 1,
                    "running_total": index + 1,
                    "failed_chunks": [*checkpoint.failed_chunks, *failed],
                })
                await self.state.advance(run.id, checkpoint)

            pending = {asyncio.ensure_future(self._await_child(c)) for c in report.children if c.run_id}
            while pending:
                done, pending = await asyncio.wait(pending, timeout=HEARTBEAT_SECONDS)
                for finished in done:
                    finished.result()
                if pending:
                    # Keep the coordinating run clear of stale sweeps
                    await self.state.advance(run.id, checkpoint)

            status = await self.state.advance(
                run.id,
                checkpoint,
                fetched=sum(c.fetched for c in report.children),
                inserted=sum(c.inserted for c in report.children),
                updated=sum(c.updated for c in report.children),
            )
            if status not in ACTIVE_STATUSES:
                return report

            if merge_after:
                await self._merge(report, dry_run)

            problems = [c for c in report.children if not c.clean]
            merge_ok = not merge_after or report.merge_status == RunStatus.COMPLETED
            if problems or not merge_ok:
                summary = ", ".join(
                    f"{c.source.value}: {'skipped' if c.skipped else (c.status.value if c.status else c.error)}"
                    for c in problems
                )
                if not merge_ok:
                    merge_state = report.merge_status.value if report.merge_status else "not started"
                    summary = f"{summary}; merge: {merge_state}" if summary else f"merge: {merge_state}"
                checkpoint = checkpoint.model_copy(update={"error_count": len(problems) + (0 if merge_ok else 1)})
                await self.state.finish(
                    run.id, RunStatus.COMPLETED_WITH_ERRORS, error_message=summary, checkpoint=checkpoint
                )
            else:
                await self.state.finish(run.id, RunStatus.COMPLETED)
            return report

        except asyncio.CancelledError:
            raise

        except Exception as e:
            logger.exception(f"Command center run {run.id} failed")
            await self.state.finish(run.id, RunStatus.FAILED, error_message=f"{type(e).__name__}: {e}")
            return report

    async def _await_child(self, child: ChildOutcome) -> None:
        finished = await self.runner.wait(child.run_id)
        child.status = finished.status
        child.fetched = finished.total_fetched or 0
        child.inserted = finished.total_inserted or 0
        child.updated = finished.total_updated or 0

    async def _merge(self, report: CommandCenterReport, dry_run: bool) -> None:
        try:
            merge_run = await self.runner.run_merge(dry_run=dry_run)
        except SyncException as e:
            logger.warning(f"Command center run {report.run_id}: merge not started: {e.message}")
            return
        report.merge_run_id = merge_run.id
        finished = await self.runner.wait(merge_run.id)
        report.merge_status = finished.status
