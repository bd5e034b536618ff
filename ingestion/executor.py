"""
Chunk Executor - runs a work plan one bounded chunk at a time.

For every chunk, in order:

1. Pace (rate-limited plans only, never before the first chunk of a run)
2. Check the run status; anything but running/continuing stops the loop
3. Execute the chunk under a timeout, retrying transient errors in place
4. Advance the run with the chunk's counts and checkpoint

Chunk failures (timeouts, source errors, exhausted retries) bump a
consecutive-failure counter kept in the checkpoint; the chunk is skipped or
retried per the plan's policy, and the run fails once the counter reaches the
threshold. Errors outside that taxonomy fail the run immediately. In both
cases the checkpoint reached so far is kept for resumption.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional
import asyncio
import enum
import logging
import time
import uuid

from core.config import settings
from core.exceptions import (
    ChunkError,
    ChunkFailedError,
    ChunkTimeoutError,
    ExtractionError,
    RetryableError,
    RateLimitError,
)
from ingestion.state_machine import RunStateMachine
from models.base import ACTIVE_STATUSES, RunStatus
from schemas.checkpoint import CheckpointBase

logger = logging.getLogger(__name__)


class ChunkFailurePolicy(str, enum.Enum):
    """What to do with a chunk that failed but left the run under threshold"""
    RETRY = "retry"  # run the same chunk again (cursor sources cannot skip a page)
    SKIP = "skip"    # move on, recording the chunk in failedChunks


@dataclass
class ChunkResult:
    """Outcome of one successful chunk"""
    checkpoint: CheckpointBase  # progress after this chunk
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    done: bool = False
    errors: List[str] = field(default_factory=list)  # record-level, recovered


@dataclass
class ExecutionResult:
    """What one call to ChunkExecutor.execute observed"""
    run_id: uuid.UUID
    status: RunStatus
    checkpoint: CheckpointBase
    has_more: bool
    chunks_processed: int = 0
    error: Optional[str] = None
    results: List[ChunkResult] = field(default_factory=list)
    chunk_errors: List[str] = field(default_factory=list)


class WorkPlan(ABC):
    """
    A run's work, expressed as an ordered sequence of chunks.

    Implementations hold whatever the chunks need (a source, pre-split input,
    a staging writer) and derive the position of the next chunk from the
    checkpoint they are handed.
    """

    rate_limited: bool = False
    failure_policy: ChunkFailurePolicy = ChunkFailurePolicy.RETRY

    @abstractmethod
    def initial_checkpoint(self) -> CheckpointBase:
        """Checkpoint of a run that has not processed anything yet."""

    @abstractmethod
    async def run_chunk(self, checkpoint: CheckpointBase) -> ChunkResult:
        """Process the chunk that follows ``checkpoint``."""

    def skip_chunk(self, checkpoint: CheckpointBase) -> CheckpointBase:
        """Checkpoint positioned after the chunk that follows ``checkpoint``."""
        return checkpoint.model_copy(update={
            "chunk_index": checkpoint.chunk_index + 1,
            "failed_chunks": [*checkpoint.failed_chunks, checkpoint.chunk_index],
        })

    def is_exhausted(self, checkpoint: CheckpointBase) -> bool:
        """True when no chunk follows ``checkpoint`` (used after a skip)."""
        return False


class ChunkExecutor:
    """
    Sequential chunk runner with timeout, retry and failure-budget policy.

    Attributes:
        chunk_timeout: Seconds one chunk may take before it counts as failed
        max_consecutive_failures: Failed chunks in a row that fail the run
        transient_retries: In-place retries of a transient error per chunk
        retry_delay: Base of the exponential backoff between retries
        pacing_delay: Seconds slept between chunks of rate-limited plans
    """

    def __init__(
        self,
        state: RunStateMachine,
        chunk_timeout: Optional[float] = None,
        max_consecutive_failures: Optional[int] = None,
        transient_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        pacing_delay: Optional[float] = None
    ):
        self.state = state
        self.chunk_timeout = chunk_timeout if chunk_timeout is not None else settings.CHUNK_TIMEOUT_SECONDS
        self.max_consecutive_failures = (
            max_consecutive_failures if max_consecutive_failures is not None
            else settings.MAX_CONSECUTIVE_FAILURES
        )
        self.transient_retries = transient_retries if transient_retries is not None else settings.TRANSIENT_MAX_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else settings.TRANSIENT_RETRY_DELAY
        self.pacing_delay = pacing_delay if pacing_delay is not None else settings.PACING_DELAY_MS / 1000

    async def execute(
        self,
        run_id: uuid.UUID,
        plan: WorkPlan,
        checkpoint: Optional[CheckpointBase] = None,
        max_chunks: Optional[int] = None,
        time_budget: Optional[float] = None
    ) -> ExecutionResult:
        """
        Drive ``plan`` for run ``run_id`` until it is done, stopped or out of budget.

        Args:
            run_id: Run owned by this executor
            plan: Work to perform
            checkpoint: Where to start; the plan's initial checkpoint when None
            max_chunks: Yield after this many chunk attempts (one physical invocation)
            time_budget: Yield once this many seconds have elapsed

        Returns:
            ExecutionResult; ``has_more`` is True when the run stays active and
            another invocation should continue it
        """
        checkpoint = checkpoint or plan.initial_checkpoint()
        started = time.monotonic()
        processed = 0
        results: List[ChunkResult] = []
        chunk_errors: List[str] = []

        def outcome(status: RunStatus, has_more: bool, error: Optional[str] = None) -> ExecutionResult:
            return ExecutionResult(
                run_id=run_id,
                status=status,
                checkpoint=checkpoint,
                has_more=has_more,
                chunks_processed=processed,
                error=error,
                results=results,
                chunk_errors=chunk_errors,
            )

        while True:
            out_of_chunks = max_chunks is not None and processed >= max_chunks
            out_of_time = time_budget is not None and time.monotonic() - started >= time_budget
            if out_of_chunks or out_of_time:
                if out_of_time:
                    logger.info(f"Sync run {run_id} yielding after {processed} chunk(s): time budget spent")
                status = await self.state.status(run_id)
                return outcome(status, has_more=status in ACTIVE_STATUSES)

            if plan.rate_limited and (processed > 0 or checkpoint.chunk_index > 0):
                await self._pace()

            # ------ Cooperative cancellation point ------
            status = await self.state.status(run_id)
            if status not in ACTIVE_STATUSES:
                logger.info(f"Sync run {run_id} is {status.value if status else 'gone'}; stopping before chunk {checkpoint.chunk_index}")
                return outcome(status, has_more=False)

            chunk_index = checkpoint.chunk_index
            try:
                result = await self._run_chunk_with_retry(run_id, plan, checkpoint)

            except ChunkError as e:
                processed += 1
                failures = checkpoint.consecutive_failures + 1
                message = f"Chunk {chunk_index} failed: {e.message}"
                chunk_errors.append(message)
                logger.warning(
                    f"Sync run {run_id}: {message} "
                    f"({failures}/{self.max_consecutive_failures} consecutive)"
                )

                if failures >= self.max_consecutive_failures:
                    checkpoint = checkpoint.model_copy(update={"consecutive_failures": failures})
                    error = f"Aborted after {failures} consecutive chunk failures. Last: {message}"
                    await self.state.finish(run_id, RunStatus.FAILED, error_message=error, checkpoint=checkpoint)
                    return outcome(RunStatus.FAILED, has_more=False, error=error)

                if plan.failure_policy == ChunkFailurePolicy.SKIP:
                    checkpoint = plan.skip_chunk(checkpoint)
                checkpoint = checkpoint.model_copy(update={"consecutive_failures": failures})
                await self.state.record_chunk_failure(run_id, checkpoint, message)

                if plan.failure_policy == ChunkFailurePolicy.SKIP and plan.is_exhausted(checkpoint):
                    return await self._complete(run_id, checkpoint, outcome)
                continue

            except asyncio.CancelledError:
                raise

            except Exception as e:
                # ------ Run-fatal: outside the retry taxonomy ------
                processed += 1
                error = f"Chunk {chunk_index} raised {type(e).__name__}: {e}"
                logger.exception(f"Sync run {run_id} failed: {error}")
                await self.state.finish(run_id, RunStatus.FAILED, error_message=error, checkpoint=checkpoint)
                return outcome(RunStatus.FAILED, has_more=False, error=error)

            processed += 1
            results.append(result)
            checkpoint = result.checkpoint.model_copy(update={
                "consecutive_failures": 0,
                "error_count": result.checkpoint.error_count + len(result.errors),
            })
            status = await self.state.advance(
                run_id,
                checkpoint,
                fetched=result.fetched,
                inserted=result.inserted,
                updated=result.updated,
            )
            logger.debug(
                f"Sync run {run_id} chunk {chunk_index} done: fetched={result.fetched} "
                f"inserted={result.inserted} updated={result.updated}"
            )

            if result.done:
                if status not in ACTIVE_STATUSES:
                    return outcome(status, has_more=False)
                return await self._complete(run_id, checkpoint, outcome)

    async def _complete(self, run_id, checkpoint: CheckpointBase, outcome) -> ExecutionResult:
        final = RunStatus.COMPLETED_WITH_ERRORS if checkpoint.has_errors else RunStatus.COMPLETED
        finished = await self.state.finish(run_id, final)
        if not finished:
            return outcome(await self.state.status(run_id), has_more=False)
        return outcome(final, has_more=False)

    async def _run_chunk_with_retry(
        self,
        run_id: uuid.UUID,
        plan: WorkPlan,
        checkpoint: CheckpointBase
    ) -> ChunkResult:
        """
        Run one chunk under the timeout, retrying transient errors in place.

        Raises:
            ChunkError: Timeout, chunk-fatal source error, or retries exhausted
        """
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(plan.run_chunk(checkpoint), timeout=self.chunk_timeout)

            except asyncio.TimeoutError as e:
                raise ChunkTimeoutError(
                    f"Chunk exceeded {self.chunk_timeout}s",
                    context={"run_id": str(run_id), "chunk_index": checkpoint.chunk_index},
                    original_exception=e
                )

            except RetryableError as e:
                attempt += 1
                if attempt > self.transient_retries:
                    raise ChunkFailedError(
                        f"Transient error persisted after {self.transient_retries} retries: {e.message}",
                        context={
                            "run_id": str(run_id),
                            "chunk_index": checkpoint.chunk_index,
                            "attempts": attempt,
                        },
                        original_exception=e
                    )
                delay = self.retry_delay * (2 ** (attempt - 1))
                if isinstance(e, RateLimitError) and e.retry_after:
                    delay = max(delay, float(e.retry_after))
                logger.warning(
                    f"Sync run {run_id} chunk {checkpoint.chunk_index}: transient {type(e).__name__}, "
                    f"retrying in {delay}s (attempt {attempt}/{self.transient_retries})"
                )
                await asyncio.sleep(delay)

            except ExtractionError as e:
                raise ChunkFailedError(
                    f"Source error: {e.message}",
                    context={"run_id": str(run_id), "chunk_index": checkpoint.chunk_index},
                    original_exception=e
                )

    async def _pace(self) -> None:
        if self.pacing_delay > 0:
            await asyncio.sleep(self.pacing_delay)
