"""
Client-side polling of a sync run until it stops.

Pollers ask for a run's status at a base interval while it is active. When
several polls in a row see the same counters the interval doubles (up to a
cap); any progress snaps it back to the base interval.
"""

from typing import Awaitable, Callable, Optional, Tuple
import asyncio
import logging
import uuid

import httpx

from core.config import settings
from core.exceptions import RunNotFoundError
from models.base import ACTIVE_STATUSES
from schemas.api import SyncRunResponse

logger = logging.getLogger(__name__)

StatusFetcher = Callable[[uuid.UUID], Awaitable[SyncRunResponse]]


def _progress_key(run: SyncRunResponse) -> Tuple:
    return (run.status, run.total_fetched, run.total_inserted, run.total_updated, run.running_total)


class PollBackoff:
    """Adaptive poll interval."""

    def __init__(
        self,
        interval: Optional[float] = None,
        max_interval: Optional[float] = None,
        idle_polls_before_backoff: Optional[int] = None
    ):
        self.base_interval = interval if interval is not None else settings.POLL_INTERVAL_SECONDS
        self.max_interval = max_interval if max_interval is not None else settings.POLL_MAX_INTERVAL_SECONDS
        self.idle_polls_before_backoff = (
            idle_polls_before_backoff if idle_polls_before_backoff is not None
            else settings.POLL_IDLE_POLLS_BEFORE_BACKOFF
        )
        self.interval = self.base_interval
        self.idle_polls = 0

    def observe(self, changed: bool) -> float:
        """Record one poll and return the delay before the next."""
        if changed:
            self.idle_polls = 0
            self.interval = self.base_interval
            return self.interval

        self.idle_polls += 1
        if self.idle_polls >= self.idle_polls_before_backoff:
            self.interval = min(self.interval * 2, self.max_interval)
        return self.interval


class RunStatusPoller:
    """
    Poll ``fetch_status`` until the run is no longer running or continuing.

    Attributes:
        fetch_status: Coroutine returning the run's current status
        on_update: Optional callback invoked with every observed snapshot
    """

    def __init__(
        self,
        fetch_status: StatusFetcher,
        interval: Optional[float] = None,
        max_interval: Optional[float] = None,
        idle_polls_before_backoff: Optional[int] = None,
        on_update: Optional[Callable[[SyncRunResponse], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.fetch_status = fetch_status
        self.interval = interval
        self.max_interval = max_interval
        self.idle_polls_before_backoff = idle_polls_before_backoff
        self.on_update = on_update
        self.sleep = sleep

    async def poll(self, run_id: uuid.UUID, max_polls: Optional[int] = None) -> SyncRunResponse:
        """Return the first snapshot whose status is not active (or the last one polled)."""
        backoff = PollBackoff(self.interval, self.max_interval, self.idle_polls_before_backoff)
        previous = None
        polls = 0

        while True:
            run = await self.fetch_status(run_id)
            polls += 1
            if self.on_update is not None:
                self.on_update(run)

            if run.status not in ACTIVE_STATUSES:
                logger.info(f"Sync run {run_id} reached {run.status.value} after {polls} poll(s)")
                return run
            if max_polls is not None and polls >= max_polls:
                return run

            key = _progress_key(run)
            delay = backoff.observe(changed=previous is None or key != previous)
            previous = key
            if run.is_stale:
                logger.warning(f"Sync run {run_id} has shown no activity recently")

            await self.sleep(delay)


def runner_status_fetcher(runner, stale_after_seconds: Optional[int] = None) -> StatusFetcher:
    """Status fetcher reading straight from a SyncRunner in this process."""
    stale_after = stale_after_seconds if stale_after_seconds is not None else settings.STALE_WARNING_SECONDS

    async def fetch(run_id: uuid.UUID) -> SyncRunResponse:
        return SyncRunResponse.from_run(await runner.get_run_status(run_id), stale_after)

    return fetch


async def fetch_run_status_http(
    client: httpx.AsyncClient,
    run_id: uuid.UUID,
    api_key: Optional[str] = None
) -> SyncRunResponse:
    """
    GET /sync/runs/{run_id} through ``client`` (base_url set by the caller).

    Raises:
        RunNotFoundError: The API answered 404
        httpx.HTTPStatusError: Any other non-success status
    """
    headers = {"X-Admin-Key": api_key} if api_key else {}
    response = await client.get(f"/sync/runs/{run_id}", headers=headers)
    if response.status_code == 404:
        raise RunNotFoundError("Sync run not found", context={"run_id": str(run_id)})
    response.raise_for_status()
    return SyncRunResponse.model_validate(response.json())
