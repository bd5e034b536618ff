"""
Unit tests for the chunk executor
"""

import asyncio
import logging
import httpx
import pytest
from unittest.mock import AsyncMock
from core.exceptions import APIExtractionError, ExtractionError, NetworkError
from ingestion.executor import ChunkExecutor, ChunkFailurePolicy, ChunkResult, WorkPlan
from ingestion.extractors.api_extractor import APIExtractor
from ingestion.plans import CursorPagePlan
from ingestion.staging import StagingWriter
from models.base import RunStatus, SyncSource
from schemas.checkpoint import ChunkCheckpoint, CursorCheckpoint, parse_checkpoint

SLOW = "slow"


class ScriptedPlan(WorkPlan):
    """
    ``total`` chunks of 10 records each.

    ``failures`` maps a chunk index to outcomes consumed one per attempt:
    an exception to raise or SLOW to outlast the chunk timeout.
    """

    def __init__(self, total, failures=None, policy=ChunkFailurePolicy.SKIP, rate_limited=False, on_chunk=None):
        self.total = total
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.failure_policy = policy
        self.rate_limited = rate_limited
        self.on_chunk = on_chunk
        self.calls = []

    def initial_checkpoint(self):
        return ChunkCheckpoint(total_chunks=self.total)

    def is_exhausted(self, checkpoint):
        return checkpoint.chunk_index >= self.total

    async def run_chunk(self, checkpoint):
        index = checkpoint.chunk_index
        self.calls.append(index)
        pending = self.failures.get(index)
        if pending:
            failure = pending.pop(0)
            if failure == SLOW:
                await asyncio.sleep(1)
            else:
                raise failure
        if self.on_chunk is not None:
            await self.on_chunk(index)

        return ChunkResult(
            checkpoint=checkpoint.model_copy(update={
                "chunk_index": index + 1,
                "running_total": checkpoint.running_total + 10,
            }),
            fetched=10,
            inserted=10,
            done=index + 1 >= self.total,
        )


@pytest.fixture
def executor(state):
    return ChunkExecutor(
        state,
        chunk_timeout=2.0,
        max_consecutive_failures=3,
        transient_retries=1,
        retry_delay=0.0,
        pacing_delay=0.0,
    )


async def _start(state, plan):
    return await state.start(SyncSource.PAYMENT_A, checkpoint=plan.initial_checkpoint())


class TestChunkExecution:
    """Happy path and budgets"""

    @pytest.mark.asyncio
    async def test_all_chunks_complete(self, executor, state, store):
        plan = ScriptedPlan(3)
        run = await _start(state, plan)

        result = await executor.execute(run.id, plan)

        assert result.status == RunStatus.COMPLETED
        assert result.has_more is False
        assert result.chunks_processed == 3
        assert plan.calls == [0, 1, 2]

        stored = await store.get(run.id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.total_inserted == 30
        assert parse_checkpoint(stored.checkpoint).running_total == 30

    @pytest.mark.asyncio
    async def test_max_chunks_yields_with_more(self, executor, state, store):
        """One invocation processes at most max_chunks; the next one continues"""
        plan = ScriptedPlan(5)
        run = await _start(state, plan)

        first = await executor.execute(run.id, plan, max_chunks=2)
        assert first.has_more is True
        assert first.status == RunStatus.CONTINUING
        assert first.checkpoint.chunk_index == 2

        second = await executor.execute(run.id, plan, checkpoint=first.checkpoint)
        assert second.status == RunStatus.COMPLETED
        assert plan.calls == [0, 1, 2, 3, 4]
        assert (await store.get(run.id)).total_inserted == 50

    @pytest.mark.asyncio
    async def test_no_pacing_before_first_chunk(self, executor, state):
        """Rate-limited plans sleep between chunks only"""
        executor._pace = AsyncMock()
        plan = ScriptedPlan(3, rate_limited=True)
        run = await _start(state, plan)

        await executor.execute(run.id, plan)

        assert executor._pace.await_count == 2

    @pytest.mark.asyncio
    async def test_continuation_paces_first_chunk(self, executor, state):
        executor._pace = AsyncMock()
        plan = ScriptedPlan(3, rate_limited=True)
        run = await _start(state, plan)

        await executor.execute(run.id, plan, checkpoint=ChunkCheckpoint(total_chunks=3, chunk_index=1))

        assert executor._pace.await_count == 2
        assert plan.calls == [1, 2]


class TestChunkFailures:
    """Failure budget and policies"""

    @pytest.mark.asyncio
    async def test_skipped_chunk_completes_with_errors(self, executor, state, store):
        plan = ScriptedPlan(3, failures={1: [APIExtractionError("bad page")]})
        run = await _start(state, plan)

        result = await executor.execute(run.id, plan)

        assert result.status == RunStatus.COMPLETED_WITH_ERRORS
        assert result.checkpoint.failed_chunks == [1]
        assert len(result.chunk_errors) == 1
        assert plan.calls == [0, 1, 2]

        stored = await store.get(run.id)
        assert stored.total_inserted == 20
        assert "bad page" in stored.error_message

    @pytest.mark.asyncio
    async def test_consecutive_failures_fail_run_and_keep_checkpoint(self, executor, state, store):
        """Threshold reached: run fails, checkpoint stays resumable"""
        plan = ScriptedPlan(
            3,
            failures={1: [ExtractionError("down")] * 3},
            policy=ChunkFailurePolicy.RETRY,
        )
        run = await _start(state, plan)

        result = await executor.execute(run.id, plan)

        assert result.status == RunStatus.FAILED
        assert "3 consecutive" in result.error
        assert plan.calls == [0, 1, 1, 1]

        stored = await store.get(run.id)
        assert stored.status == RunStatus.FAILED
        checkpoint = parse_checkpoint(stored.checkpoint)
        assert checkpoint.chunk_index == 1
        assert checkpoint.running_total == 10
        assert checkpoint.consecutive_failures == 3
        assert checkpoint.is_resumable()

    @pytest.mark.asyncio
    async def test_success_resets_failure_counter(self, executor, state):
        plan = ScriptedPlan(
            4,
            failures={0: [ExtractionError("a")] * 2, 2: [ExtractionError("b")] * 2},
            policy=ChunkFailurePolicy.RETRY,
        )
        run = await _start(state, plan)

        result = await executor.execute(run.id, plan)

        assert result.status == RunStatus.COMPLETED
        assert len(result.chunk_errors) == 4
        assert result.checkpoint.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_transient_error_retried_in_place(self, executor, state):
        """One transient error is absorbed without counting a chunk failure"""
        plan = ScriptedPlan(2, failures={0: [NetworkError("flaky")]})
        run = await _start(state, plan)

        result = await executor.execute(run.id, plan)

        assert result.status == RunStatus.COMPLETED
        assert result.chunk_errors == []
        assert plan.calls == [0, 0, 1]

    @pytest.mark.asyncio
    async def test_exhausted_transient_retries_count_as_failure(self, executor, state):
        plan = ScriptedPlan(
            2,
            failures={0: [NetworkError("flaky"), NetworkError("flaky")]},
            policy=ChunkFailurePolicy.RETRY,
        )
        run = await _start(state, plan)

        result = await executor.execute(run.id, plan)

        assert result.status == RunStatus.COMPLETED
        assert len(result.chunk_errors) == 1
        assert "persisted" in result.chunk_errors[0]

    @pytest.mark.asyncio
    async def test_chunk_timeout(self, state):
        executor = ChunkExecutor(
            state, chunk_timeout=0.05, max_consecutive_failures=3,
            transient_retries=0, retry_delay=0.0, pacing_delay=0.0
        )
        plan = ScriptedPlan(2, failures={0: [SLOW]})
        run = await _start(state, plan)

        result = await executor.execute(run.id, plan)

        assert result.status == RunStatus.COMPLETED_WITH_ERRORS
        assert result.checkpoint.failed_chunks == [0]
        assert "exceeded" in result.chunk_errors[0]

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_run_immediately(self, executor, state, store):
        plan = ScriptedPlan(3, failures={1: [KeyError("boom")]})
        run = await _start(state, plan)

        result = await executor.execute(run.id, plan)

        assert result.status == RunStatus.FAILED
        assert "KeyError" in result.error
        assert plan.calls == [0, 1]

        stored = await store.get(run.id)
        assert stored.status == RunStatus.FAILED
        assert parse_checkpoint(stored.checkpoint).chunk_index == 1


class TestCooperativeCancellation:
    """Cancellation is observed at chunk boundaries"""

    @pytest.mark.asyncio
    async def test_cancel_during_chunk_stops_after_it(self, executor, state, store):
        run_ids = []

        async def cancel_on_second(index):
            if index == 1:
                await state.cancel(run_ids[0])

        plan = ScriptedPlan(5, on_chunk=cancel_on_second)
        run = await _start(state, plan)
        run_ids.append(run.id)

        result = await executor.execute(run.id, plan)

        assert result.status == RunStatus.CANCELLED
        assert result.has_more is False
        assert plan.calls == [0, 1]

        stored = await store.get(run.id)
        assert stored.status == RunStatus.CANCELLED
        # The chunk in flight when the cancel landed is still accounted for
        assert stored.total_inserted == 20

    @pytest.mark.asyncio
    async def test_cancelled_before_start_runs_nothing(self, executor, state):
        plan = ScriptedPlan(3)
        run = await _start(state, plan)
        await state.cancel(run.id)

        result = await executor.execute(run.id, plan)

        assert result.status == RunStatus.CANCELLED
        assert plan.calls == []


class TestHttpSourceRetries:
    """An HTTP source is retried by the executor only"""

    @staticmethod
    async def _http_run(state, session_factory, handler):
        source = APIExtractor(
            SyncSource.PAYMENT_A,
            api_url="https://api.example.com/customers",
            transport=httpx.MockTransport(handler),
        )
        run = await state.start(SyncSource.PAYMENT_A, checkpoint=CursorCheckpoint())
        return run, CursorPagePlan(source, StagingWriter(session_factory), run.id)

    @pytest.mark.asyncio
    async def test_rate_limit_waits_retry_after_once(self, executor, state, session_factory, caplog):
        requests = []
        responses = [
            httpx.Response(429, headers={"Retry-After": "0.01"}),
            httpx.Response(200, json={"data": [{"id": "cus_1", "email": "a@example.com"}], "has_more": False}),
        ]

        def handler(request):
            requests.append(request)
            return responses.pop(0)

        run, plan = await self._http_run(state, session_factory, handler)
        with caplog.at_level(logging.WARNING, logger="ingestion.executor"):
            result = await executor.execute(run.id, plan)

        assert result.status == RunStatus.COMPLETED
        assert len(requests) == 2
        assert "retrying in 0.01s" in caplog.text

    @pytest.mark.asyncio
    async def test_server_errors_bounded_by_executor_retries(self, state, session_factory):
        executor = ChunkExecutor(
            state, chunk_timeout=2.0, max_consecutive_failures=2,
            transient_retries=1, retry_delay=0.0, pacing_delay=0.0
        )
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(503, text="unavailable")

        run, plan = await self._http_run(state, session_factory, handler)
        result = await executor.execute(run.id, plan)

        assert result.status == RunStatus.FAILED
        # 2 chunk attempts, each one request plus one in-place retry
        assert len(requests) == 2 * 2
