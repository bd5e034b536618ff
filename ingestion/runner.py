# ============================================================================
# File: ingestion/runner.py
# Description: Admin surface over sync runs, each driven in its own task
# ============================================================================
"""
Sync Runner - starts, stops and supervises sync runs.

This module provides the operations behind the admin API:
- Start a source sync, a bulk-unify merge or a page-at-a-time pager
- Cancel by source, by run or everything at once
- Pause, resume and force-kill stale runs
- Global kill switch and retention of finished runs

Every run is driven by ChunkExecutor inside its own asyncio task, so runs of
different sources proceed concurrently while the state machine keeps at most
one active run per source.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from datetime import timedelta
import asyncio
import logging
import uuid

from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.database import async_session_maker
from core.exceptions import (
    AlreadyRunningError,
    InvalidTransitionError,
    RunNotFoundError,
    RunNotResumableError,
    SyncPausedError,
)
from ingestion.base import ChunkedDataSource, CursorDataSource, DataSource
from ingestion.checkpoint_store import CheckpointStore
from ingestion.executor import ChunkExecutor, ExecutionResult, WorkPlan
from ingestion.extractors.api_extractor import build_api_source
from ingestion.extractors.csv_extractor import CSVExtractor
from ingestion.merge import MergePlan
from ingestion.pagination import SourcePager
from ingestion.plans import CursorPagePlan, StaticChunkPlan
from ingestion.staging import StagingWriter
from ingestion.state_machine import CANCEL_REASON, RunStateMachine
from models.base import ACTIVE_STATUSES, INGESTION_SOURCES, RunStatus, SyncSource, utcnow
from models.sync_run import SyncRun
from models.system_setting import SYNC_PAUSED_KEY
from schemas.checkpoint import CheckpointBase, parse_checkpoint
from schemas.records import PageResult

logger = logging.getLogger(__name__)

SourceFactory = Callable[[Dict[str, Any]], DataSource]

ALL_SOURCES = "all"

_OPEN_STATUSES = ACTIVE_STATUSES | {RunStatus.PAUSED}


def _api_factory(source: SyncSource) -> SourceFactory:
    return lambda options: build_api_source(source)


def _csv_source(source: SyncSource, options: Dict[str, Any]) -> CSVExtractor:
    return CSVExtractor(
        source,
        file_path=options["file_path"],
        max_bytes=options.get("max_bytes"),
        max_rows=options.get("max_rows"),
    )


class SyncRunner:
    """
    Orchestrates sync runs for every source.

    Responsibilities:
    - Build the work plan for a run from its source and start options
    - Drive runs in background tasks and keep them reachable by id
    - Route operator actions (cancel, pause, resume, kill) to the state machine
    - Refuse new work while the global kill switch is set
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        chunk_timeout: Optional[float] = None,
        max_consecutive_failures: Optional[int] = None,
        transient_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        pacing_delay: Optional[float] = None,
        time_budget: Optional[float] = None
    ):
        self.session_factory = session_factory or async_session_maker
        self.store = CheckpointStore(self.session_factory)
        self.state = RunStateMachine(self.store)
        self.stager = StagingWriter(self.session_factory)
        self.executor = ChunkExecutor(
            self.state,
            chunk_timeout=chunk_timeout,
            max_consecutive_failures=max_consecutive_failures,
            transient_retries=transient_retries,
            retry_delay=retry_delay,
            pacing_delay=pacing_delay,
        )
        self.time_budget = time_budget if time_budget is not None else settings.INVOCATION_TIME_BUDGET_SECONDS
        self._factories: Dict[SyncSource, SourceFactory] = {
            source: _api_factory(source) for source in INGESTION_SOURCES
        }
        self._tasks: Dict[uuid.UUID, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Source registry
    # ------------------------------------------------------------------

    def register_source(self, source: SyncSource, factory: SourceFactory) -> None:
        """Replace how ``source`` is built from a run's start options."""
        if source not in INGESTION_SOURCES:
            raise ValueError(f"{source.value} is not an ingestion source")
        self._factories[source] = factory

    def build_source(self, source: SyncSource, options: Optional[Dict[str, Any]] = None) -> DataSource:
        options = options or {}
        if source not in INGESTION_SOURCES:
            raise ValueError(f"{source.value} is not an ingestion source")
        if options.get("file_path"):
            return _csv_source(source, options)
        return self._factories[source](options)

    # ------------------------------------------------------------------
    # Starting work
    # ------------------------------------------------------------------

    async def start_sync(
        self,
        source: SyncSource,
        dry_run: bool = False,
        options: Optional[Dict[str, Any]] = None
    ) -> SyncRun:
        """
        Start a sync of ``source`` in the background.

        Raises:
            SyncPausedError: Kill switch engaged
            AlreadyRunningError: The source has an active run
            ValueError: ``source`` is not an ingestion source

        A source that cannot be built or loaded fails the run it was started
        for rather than this call.
        """
        if source not in INGESTION_SOURCES:
            raise ValueError(f"{source.value} is not an ingestion source")
        await self.ensure_not_paused()
        options = options or {}

        run = await self.state.start(source, dry_run=dry_run, options=options)
        self._spawn(run, None)
        return run

    async def run_merge(
        self,
        dry_run: bool = False,
        batch_size: Optional[int] = None,
        import_id: Optional[uuid.UUID] = None
    ) -> SyncRun:
        """
        Start a bulk-unify run merging pending staged records.

        Raises:
            SyncPausedError: Kill switch engaged
            AlreadyRunningError: A merge is already active
        """
        await self.ensure_not_paused()
        options: Dict[str, Any] = {"batch_size": batch_size or settings.MERGE_BATCH_SIZE}
        if import_id is not None:
            options["import_id"] = str(import_id)

        run = await self.state.start(SyncSource.BULK_UNIFY, dry_run=dry_run, options=options)
        self._spawn(run, None)
        return run

    async def fetch_page(
        self,
        source: SyncSource,
        cursor: Optional[str] = None,
        run_id: Optional[uuid.UUID] = None,
        dry_run: bool = False,
        options: Optional[Dict[str, Any]] = None
    ) -> PageResult:
        """
        Process one page of a cursor source in the caller's invocation.

        Raises:
            SyncPausedError: Kill switch engaged when starting a new run
            AlreadyRunningError: Starting a new run while the source has an active one
            InvalidTransitionError: ``source`` is not cursor-paginated
        """
        if run_id is None:
            await self.ensure_not_paused()
            existing = await self.store.active_run(source)
            if existing is not None:
                raise AlreadyRunningError(source.value, existing.id)
        options = options or {}

        data_source = self.build_source(source, options)
        try:
            if not isinstance(data_source, CursorDataSource):
                raise InvalidTransitionError(
                    "Page-at-a-time sync needs a cursor-paginated source",
                    context={"source": source.value}
                )
            pager = SourcePager(
                data_source,
                self.state,
                self.executor,
                self.stager,
                dry_run=dry_run,
                options=options,
                max_pages=options.get("max_pages")
            )
            return await pager.fetch_page(cursor=cursor, run_id=run_id)
        finally:
            await data_source.close()

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def cancel_sync(self, source: Union[SyncSource, str, None] = ALL_SOURCES) -> List[uuid.UUID]:
        """Cancel every open run of ``source`` (or of every source for "all")."""
        scope = None if source in (None, ALL_SOURCES) else SyncSource(source)

        cancelled: List[uuid.UUID] = []
        if scope == SyncSource.COMMAND_CENTER:
            for run in await self.store.list_runs(source=scope, statuses=_OPEN_STATUSES):
                cancelled.extend(await self._cancel_children(run))

        cancelled.extend(await self.state.cancel_source(scope, reason=CANCEL_REASON))
        return cancelled

    async def cancel_run(self, run_id: uuid.UUID) -> bool:
        """
        Cancel one run; a command-center run takes its child runs with it.

        Raises:
            RunNotFoundError: Unknown run id
        """
        run = await self.get_run_status(run_id)
        cancelled = await self.state.cancel(run_id)
        if cancelled and run.source == SyncSource.COMMAND_CENTER:
            await self._cancel_children(run)
        return cancelled

    async def pause_run(self, run_id: uuid.UUID) -> bool:
        return await self.state.pause(run_id)

    async def force_kill_zombies(
        self,
        threshold_seconds: Optional[int] = None,
        manual: bool = True
    ) -> List[uuid.UUID]:
        """Fail active runs with no activity for ``threshold_seconds``."""
        threshold = threshold_seconds if threshold_seconds is not None else settings.STALE_THRESHOLD_SECONDS
        return await self.state.force_kill_stale(threshold, manual=manual)

    async def resume_sync(self, run_id: uuid.UUID) -> SyncRun:
        """
        Continue a failed or paused run as a new run from its checkpoint.

        Raises:
            RunNotFoundError: Unknown run id
            RunNotResumableError: See RunStateMachine.resume
            SyncPausedError: Kill switch engaged
            AlreadyRunningError: The source has another active run
        """
        old = await self.get_run_status(run_id)
        await self.ensure_not_paused()
        if old.source == SyncSource.COMMAND_CENTER:
            raise RunNotResumableError(
                "Command center runs cannot be resumed; start a new one",
                context={"run_id": str(run_id)}
            )

        new_run = await self.state.resume(run_id)
        self._spawn(new_run, parse_checkpoint(new_run.checkpoint))
        return new_run

    async def get_run_status(self, run_id: uuid.UUID) -> SyncRun:
        run = await self.store.get(run_id)
        if run is None:
            raise RunNotFoundError("Sync run not found", context={"run_id": str(run_id)})
        return run

    async def list_runs(
        self,
        source: Optional[SyncSource] = None,
        statuses: Optional[List[RunStatus]] = None,
        limit: int = 50
    ) -> List[SyncRun]:
        return await self.store.list_runs(source=source, statuses=statuses, limit=limit)

    # ------------------------------------------------------------------
    # Kill switch and retention
    # ------------------------------------------------------------------

    async def is_sync_paused(self) -> bool:
        return (await self.store.get_setting(SYNC_PAUSED_KEY)) == "true"

    async def set_sync_paused(self, paused: bool) -> bool:
        await self.store.put_setting(SYNC_PAUSED_KEY, "true" if paused else "false")
        logger.warning(f"Global sync kill switch {'engaged' if paused else 'released'}")
        return paused

    async def cleanup_old_runs(self, days_to_keep: Optional[int] = None) -> int:
        """Delete finished runs older than the retention window."""
        days = days_to_keep if days_to_keep is not None else settings.RUN_RETENTION_DAYS
        deleted = await self.store.delete_terminal_before(utcnow() - timedelta(days=days))
        if deleted:
            logger.info(f"Deleted {deleted} sync run(s) older than {days} day(s)")
        return deleted

    # ------------------------------------------------------------------
    # Task supervision
    # ------------------------------------------------------------------

    async def wait(self, run_id: uuid.UUID, timeout: Optional[float] = None) -> SyncRun:
        """Wait for this process's task driving ``run_id``, then return the run."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return await self.get_run_status(run_id)

    async def shutdown(self) -> None:
        """Pause runs driven by this process and stop their tasks."""
        tasks = dict(self._tasks)
        if not tasks:
            return

        logger.info(f"Shutting down runner with {len(tasks)} run task(s)")
        for run_id, task in tasks.items():
            if not task.done():
                await self.state.pause(run_id)
                task.cancel()
        await asyncio.gather(*tasks.values(), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def ensure_not_paused(self) -> None:
        if await self.is_sync_paused():
            raise SyncPausedError(
                "Syncs are paused by the global kill switch",
                context={"setting": SYNC_PAUSED_KEY}
            )

    async def _cancel_children(self, run: SyncRun) -> List[uuid.UUID]:
        cancelled: List[uuid.UUID] = []
        for child in (run.options or {}).get("sources", []):
            cancelled.extend(await self.state.cancel_source(SyncSource(child)))
        return cancelled

    async def _load_source(
        self,
        source: SyncSource,
        options: Dict[str, Any]
    ) -> Tuple[DataSource, Optional[List[Any]]]:
        data_source = self.build_source(source, options)
        if not isinstance(data_source, ChunkedDataSource):
            return data_source, None
        try:
            return data_source, await data_source.load_chunks()
        except Exception:
            await data_source.close()
            raise

    def _build_plan(
        self,
        run: SyncRun,
        data_source: Optional[DataSource],
        chunks: Optional[List[Any]]
    ) -> WorkPlan:
        options = run.options or {}
        if run.source == SyncSource.BULK_UNIFY:
            import_id = options.get("import_id")
            return MergePlan(
                self.session_factory,
                run.id,
                batch_size=options.get("batch_size"),
                dry_run=run.dry_run,
                import_id=uuid.UUID(import_id) if import_id else None
            )
        if isinstance(data_source, ChunkedDataSource):
            return StaticChunkPlan(data_source, chunks or [], self.stager, run.id, dry_run=run.dry_run)
        return CursorPagePlan(
            data_source, self.stager, run.id, dry_run=run.dry_run, max_pages=options.get("max_pages")
        )

    def _spawn(self, run: SyncRun, checkpoint: Optional[CheckpointBase]) -> None:
        self.track(run, self._drive(run, checkpoint))
        logger.info(f"Sync run {run.id} for {run.source.value} started (dry_run={run.dry_run})")

    def track(self, run: SyncRun, coro) -> asyncio.Task:
        """Run ``coro`` as the task driving ``run``."""
        task = asyncio.create_task(coro, name=f"sync-run-{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(lambda t, run_id=run.id: self._on_task_done(run_id, t))
        return task

    async def _drive(
        self,
        run: SyncRun,
        checkpoint: Optional[CheckpointBase]
    ) -> Optional[ExecutionResult]:
        run_id = run.id
        data_source: Optional[DataSource] = None
        try:
            chunks = None
            if run.source != SyncSource.BULK_UNIFY:
                data_source, chunks = await self._load_source(run.source, run.options or {})
            plan = self._build_plan(run, data_source, chunks)

            result = await self.executor.execute(run_id, plan, checkpoint, time_budget=self.time_budget)
            while result.has_more:
                logger.info(f"Sync run {run_id} continuing in a new invocation from chunk {result.checkpoint.chunk_index}")
                result = await self.executor.execute(run_id, plan, result.checkpoint, time_budget=self.time_budget)
            return result

        except asyncio.CancelledError:
            logger.warning(f"Task driving sync run {run_id} was cancelled")
            raise

        except Exception as e:
            logger.exception(f"Sync run {run_id} failed outside the chunk loop")
            await self.state.finish(run_id, RunStatus.FAILED, error_message=f"{type(e).__name__}: {e}")
            return None

        finally:
            if data_source is not None:
                await data_source.close()

    def _on_task_done(self, run_id: uuid.UUID, task: asyncio.Task) -> None:
        if self._tasks.get(run_id) is task:
            del self._tasks[run_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Task driving sync run {run_id} failed: {task.exception()!r}")
