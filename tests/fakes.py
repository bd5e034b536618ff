"""
In-memory sources and staging hooks for driving real sync runs in tests
"""

import asyncio
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select

from ingestion.base import ChunkedDataSource, CursorDataSource
from ingestion.chunking import split_rows
from ingestion.staging import StagingWriter
from models.base import SyncSource
from schemas.records import SourcePage


def make_rows(count: int, prefix: str = "cus", start: int = 0) -> List[Dict[str, Any]]:
    """Distinct customers with email, phone and spend"""
    return [
        {
            "id": f"{prefix}_{i}",
            "email": f"{prefix}{i}@example.com",
            "phone": f"+1555{i:07d}",
            "name": f"Customer {i}",
            "amount": "12.50",
            "created_at": "2024-01-15T10:00:00Z",
        }
        for i in range(start, start + count)
    ]


class FakeCursorSource(CursorDataSource):
    """
    Pages served from memory; the cursor is the index of the next page.

    ``failures`` maps a page index to exceptions raised (one per fetch)
    before that page is served.
    """

    def __init__(
        self,
        source: SyncSource,
        pages: List[List[Dict[str, Any]]],
        failures: Optional[Dict[int, List[Exception]]] = None,
        rate_limited: bool = True
    ):
        super().__init__(source, rate_limited=rate_limited)
        self.pages = pages
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.calls: List[Optional[str]] = []
        self.closed = False

    async def fetch(self, cursor: Optional[str] = None) -> SourcePage:
        self.calls.append(cursor)
        index = int(cursor) if cursor else 0
        pending = self.failures.get(index)
        if pending:
            raise pending.pop(0)

        has_more = index + 1 < len(self.pages)
        return SourcePage(
            records=self.pages[index] if self.pages else [],
            has_more=has_more,
            next_cursor=str(index + 1) if has_more else None,
        )

    async def close(self) -> None:
        self.closed = True


class FakeChunkedSource(ChunkedDataSource):
    """Rows split into fixed-size chunks"""

    def __init__(self, source: SyncSource, rows: List[Dict[str, Any]], chunk_size: int):
        super().__init__(source)
        self.rows = rows
        self.chunk_size = chunk_size

    async def load_chunks(self) -> List[List[Dict[str, Any]]]:
        return split_rows(self.rows, self.chunk_size)


class GatedStagingWriter(StagingWriter):
    """
    Staging writer that blocks on its Nth call until released.

    ``reached`` is set when the blocking call starts, so a test can act while
    a chunk is in flight.
    """

    def __init__(self, session_factory, block_on_call: int):
        super().__init__(session_factory)
        self.block_on_call = block_on_call
        self.calls = 0
        self.reached = asyncio.Event()
        self.release = asyncio.Event()

    async def stage(self, import_id, source, records, dry_run=False) -> int:
        self.calls += 1
        if self.calls == self.block_on_call:
            self.reached.set()
            await self.release.wait()
        return await super().stage(import_id, source, records, dry_run=dry_run)


async def fetch_all(session_factory, query) -> List[Any]:
    """Run ``query`` in a short-lived session (SQLite holds a lock per transaction)"""
    async with session_factory() as session:
        result = await session.execute(query)
        return list(result.scalars().all())


async def count_rows(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Await ``predicate()`` until it is truthy or ``timeout`` elapses"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        value = await predicate()
        if value:
            return value
        if loop.time() >= deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(interval)
