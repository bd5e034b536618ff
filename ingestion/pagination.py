"""
Pagination/Resume protocol over cursor-paginated sources.

One logical run may span many physical invocations. Each call to
``SourcePager.fetch_page`` is one invocation that processes a single page:

- first call: no run id; a run is started and its id returned with the page
- later calls: the caller passes back ``run_id`` and ``next_cursor``; counts
  accumulate on the same SyncRun row
- the call that returns ``has_more=False`` has already moved the run to its
  terminal status
- starting without a run id but with a cursor (taken from a failed run's
  checkpoint) begins a new run at that position
"""

from typing import Any, Dict, Optional
import logging
import uuid

from core.exceptions import InvalidTransitionError, RunNotFoundError
from ingestion.base import CursorDataSource
from ingestion.executor import ChunkExecutor, ExecutionResult
from ingestion.plans import CursorPagePlan
from ingestion.staging import StagingWriter
from ingestion.state_machine import RunStateMachine
from schemas.checkpoint import CheckpointBase, CursorCheckpoint, parse_checkpoint
from schemas.records import PageResult

logger = logging.getLogger(__name__)


class SourcePager:
    """
    fetch_page(cursor, run_id) for one cursor source.

    Attributes:
        source: Cursor-paginated data source
        dry_run: Stage nothing, only count
        options: Start options stored on runs this pager creates
        max_pages: Page cap per run
    """

    def __init__(
        self,
        source: CursorDataSource,
        state: RunStateMachine,
        executor: ChunkExecutor,
        stager: StagingWriter,
        dry_run: bool = False,
        options: Optional[Dict[str, Any]] = None,
        max_pages: Optional[int] = None
    ):
        self.source = source
        self.state = state
        self.executor = executor
        self.stager = stager
        self.dry_run = dry_run
        self.options = options or {}
        self.max_pages = max_pages

    async def fetch_page(
        self,
        cursor: Optional[str] = None,
        run_id: Optional[uuid.UUID] = None
    ) -> PageResult:
        """
        Process the page at ``cursor`` for run ``run_id``, starting a run if needed.

        Raises:
            AlreadyRunningError: First call while the source has an active run
            RunNotFoundError: Unknown run id
            InvalidTransitionError: The run id belongs to another source
        """
        if run_id is None:
            start_checkpoint = CursorCheckpoint(cursor=cursor) if cursor else None
            run = await self.state.start(
                self.source.source,
                dry_run=self.dry_run,
                options=self.options,
                checkpoint=start_checkpoint
            )
            checkpoint: CheckpointBase = start_checkpoint or CursorCheckpoint()
        else:
            run = await self.state.store.get(run_id)
            if run is None:
                raise RunNotFoundError("Sync run not found", context={"run_id": str(run_id)})
            if run.source != self.source.source:
                raise InvalidTransitionError(
                    "Run belongs to a different source",
                    context={"run_id": str(run_id), "run_source": run.source.value, "source": self.source.source_name}
                )
            checkpoint = parse_checkpoint(run.checkpoint) or CursorCheckpoint()
            if cursor is not None and cursor != checkpoint.cursor:
                logger.warning(
                    f"Sync run {run_id}: caller cursor {cursor} differs from checkpoint "
                    f"{checkpoint.cursor}; following the caller"
                )
                checkpoint = checkpoint.model_copy(update={"cursor": cursor})

        return await self._invoke(run.id, checkpoint)

    async def _invoke(self, run_id: uuid.UUID, checkpoint: CheckpointBase) -> PageResult:
        plan = CursorPagePlan(
            self.source,
            self.stager,
            run_id,
            dry_run=self.dry_run,
            max_pages=self.max_pages
        )
        result: ExecutionResult = await self.executor.execute(run_id, plan, checkpoint, max_chunks=1)

        error = result.error or (result.chunk_errors[-1] if result.chunk_errors else None)
        return PageResult(
            run_id=run_id,
            records=plan.last_records if result.results else [],
            has_more=result.has_more,
            next_cursor=getattr(result.checkpoint, "cursor", None),
            error=error,
        )
