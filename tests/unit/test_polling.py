"""
Unit tests for client-side run polling
"""

from datetime import datetime
import uuid
import httpx
import pytest
from unittest.mock import AsyncMock
from core.exceptions import RunNotFoundError
from ingestion.polling import (
    PollBackoff,
    RunStatusPoller,
    fetch_run_status_http,
    runner_status_fetcher,
)
from models.base import RunStatus, SyncSource
from schemas.api import SyncRunResponse

RUN_ID = uuid.uuid4()


def _snapshot(status=RunStatus.CONTINUING, running_total=0):
    return SyncRunResponse(
        id=RUN_ID,
        source=SyncSource.PAYMENT_A,
        status=status,
        started_at=datetime(2024, 1, 15, 10, 0, 0),
        running_total=running_total,
    )


def _fetcher(snapshots):
    remaining = list(snapshots)

    async def fetch(run_id):
        assert run_id == RUN_ID
        return remaining.pop(0)

    return fetch


class TestPollBackoff:
    """Interval doubles while idle, resets on progress"""

    def test_backoff_sequence(self):
        backoff = PollBackoff(interval=1.0, max_interval=8.0, idle_polls_before_backoff=2)

        assert backoff.observe(changed=True) == 1.0
        assert backoff.observe(changed=False) == 1.0
        assert backoff.observe(changed=False) == 2.0
        assert backoff.observe(changed=False) == 4.0
        assert backoff.observe(changed=False) == 8.0
        assert backoff.observe(changed=False) == 8.0
        assert backoff.observe(changed=True) == 1.0


class TestRunStatusPoller:
    """Polling until the run stops"""

    @pytest.mark.asyncio
    async def test_polls_until_terminal_with_backoff(self):
        snapshots = [_snapshot()] * 4 + [_snapshot(RunStatus.COMPLETED, 100)]
        sleep = AsyncMock()
        poller = RunStatusPoller(
            _fetcher(snapshots), interval=1.0, max_interval=8.0,
            idle_polls_before_backoff=1, sleep=sleep
        )

        final = await poller.poll(RUN_ID)

        assert final.status == RunStatus.COMPLETED
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_progress_resets_interval(self):
        snapshots = [
            _snapshot(running_total=0),
            _snapshot(running_total=0),
            _snapshot(running_total=50),
            _snapshot(RunStatus.FAILED, 50),
        ]
        updates = []
        sleep = AsyncMock()
        poller = RunStatusPoller(
            _fetcher(snapshots), interval=1.0, max_interval=8.0,
            idle_polls_before_backoff=1, on_update=updates.append, sleep=sleep
        )

        final = await poller.poll(RUN_ID)

        assert final.status == RunStatus.FAILED
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 1.0]
        assert len(updates) == 4

    @pytest.mark.asyncio
    async def test_max_polls_returns_active_snapshot(self):
        sleep = AsyncMock()
        poller = RunStatusPoller(_fetcher([_snapshot()] * 3), interval=1.0, sleep=sleep)

        final = await poller.poll(RUN_ID, max_polls=2)

        assert final.status == RunStatus.CONTINUING
        sleep.assert_awaited_once_with(1.0)


class TestStatusFetchers:
    """Status from the runner or over HTTP"""

    @pytest.mark.asyncio
    async def test_runner_status_fetcher(self, runner):
        run = await runner.state.start(SyncSource.CRM)

        snapshot = await runner_status_fetcher(runner, stale_after_seconds=3600)(run.id)

        assert snapshot.status == RunStatus.RUNNING
        assert snapshot.is_active is True
        assert snapshot.is_stale is False

    @pytest.mark.asyncio
    async def test_http_fetch(self):
        body = _snapshot(RunStatus.COMPLETED, 30).model_dump(mode="json")
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=body)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://sync.test") as client:
            snapshot = await fetch_run_status_http(client, RUN_ID, api_key="secret")

        assert snapshot.running_total == 30
        assert seen[0].url.path == f"/sync/runs/{RUN_ID}"
        assert seen[0].headers["X-Admin-Key"] == "secret"

    @pytest.mark.asyncio
    async def test_http_fetch_not_found(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(404, json={"detail": "Sync run not found"}))
        async with httpx.AsyncClient(transport=transport, base_url="http://sync.test") as client:
            with pytest.raises(RunNotFoundError):
                await fetch_run_status_http(client, RUN_ID)
