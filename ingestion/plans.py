"""
Work plans for source ingestion, one per resume strategy.

- CursorPagePlan: one chunk per source page; position is the source cursor.
  A failed page cannot be skipped (the next cursor comes with the page), so
  failures retry the same page until the failure budget runs out.
- StaticChunkPlan: input split up front; position is the chunk index.
  Each chunk is parsed only when it runs, so a malformed chunk is skipped
  and listed in the checkpoint's failedChunks.
"""

from typing import Any, Dict, List, Optional, Tuple
import logging
import uuid

from pydantic import ValidationError

from core.config import settings
from core.exceptions import CheckpointError, MalformedPageError
from ingestion.base import ChunkedDataSource, CursorDataSource, DataSource
from ingestion.executor import ChunkFailurePolicy, ChunkResult, WorkPlan
from ingestion.staging import StagingWriter
from schemas.checkpoint import CheckpointBase, ChunkCheckpoint, CursorCheckpoint
from schemas.records import RawRecord

logger = logging.getLogger(__name__)


def map_records(source: DataSource, records: List[Dict[str, Any]]) -> Tuple[List[RawRecord], List[str]]:
    """Map source records, collecting per-record failures instead of raising."""
    mapped: List[RawRecord] = []
    errors: List[str] = []
    for record in records:
        try:
            mapped.append(source.to_raw_record(record))
        except ValidationError as e:
            record_id = source.extract_record_id(record) if isinstance(record, dict) else None
            errors.append(f"record {record_id}: {e.errors()[0]['msg'] if e.errors() else e}")
    if errors:
        logger.warning(f"{source.source_name}: {len(errors)} record(s) could not be mapped")
    return mapped, errors


class CursorPagePlan(WorkPlan):
    """Fetch and stage one page per chunk."""

    failure_policy = ChunkFailurePolicy.RETRY

    def __init__(
        self,
        source: CursorDataSource,
        stager: StagingWriter,
        run_id: uuid.UUID,
        dry_run: bool = False,
        max_pages: Optional[int] = None
    ):
        self.source = source
        self.stager = stager
        self.run_id = run_id
        self.dry_run = dry_run
        self.max_pages = min(max_pages or settings.DEFAULT_MAX_PAGES, settings.MAX_PAGES_LIMIT)
        self.rate_limited = source.rate_limited
        self.last_records: List[RawRecord] = []

    def initial_checkpoint(self) -> CheckpointBase:
        return CursorCheckpoint()

    async def run_chunk(self, checkpoint: CheckpointBase) -> ChunkResult:
        page = await self.source.fetch(checkpoint.cursor)
        if page.has_more and not page.next_cursor:
            raise MalformedPageError(
                "Source reported more pages without a cursor",
                context={"source": self.source.source_name, "cursor": checkpoint.cursor}
            )

        records, errors = map_records(self.source, page.records)
        staged = await self.stager.stage(self.run_id, self.source.source, records, dry_run=self.dry_run)
        self.last_records = records

        pages_done = checkpoint.chunk_index + 1
        capped = page.has_more and pages_done >= self.max_pages
        if capped:
            logger.info(f"{self.source.source_name}: page cap {self.max_pages} reached, more data remains")

        next_checkpoint = checkpoint.model_copy(update={
            "cursor": page.next_cursor if page.has_more else checkpoint.cursor,
            "chunk_index": pages_done,
            "running_total": checkpoint.running_total + len(page.records),
            "can_resume": page.has_more,
        })
        return ChunkResult(
            checkpoint=next_checkpoint,
            fetched=len(page.records),
            inserted=staged,
            done=not page.has_more or capped,
            errors=errors,
        )


class StaticChunkPlan(WorkPlan):
    """Stage pre-split chunks of records in order."""

    failure_policy = ChunkFailurePolicy.SKIP

    def __init__(
        self,
        source: ChunkedDataSource,
        chunks: List[Any],
        stager: StagingWriter,
        run_id: uuid.UUID,
        dry_run: bool = False
    ):
        self.source = source
        self.chunks = chunks
        self.stager = stager
        self.run_id = run_id
        self.dry_run = dry_run
        self.rate_limited = source.rate_limited

    def initial_checkpoint(self) -> CheckpointBase:
        return ChunkCheckpoint(total_chunks=len(self.chunks))

    def is_exhausted(self, checkpoint: CheckpointBase) -> bool:
        return checkpoint.chunk_index >= len(self.chunks)

    async def run_chunk(self, checkpoint: CheckpointBase) -> ChunkResult:
        if checkpoint.total_chunks != len(self.chunks):
            raise CheckpointError(
                "Input no longer matches the checkpoint",
                context={
                    "run_id": str(self.run_id),
                    "operation": "resume",
                    "checkpoint_chunks": checkpoint.total_chunks,
                    "input_chunks": len(self.chunks),
                }
            )
        if self.is_exhausted(checkpoint):
            return ChunkResult(checkpoint=checkpoint, done=True)

        records = self.source.parse_chunk(self.chunks[checkpoint.chunk_index], checkpoint.chunk_index)
        mapped, errors = map_records(self.source, records)
        staged = await self.stager.stage(self.run_id, self.source.source, mapped, dry_run=self.dry_run)

        next_checkpoint = checkpoint.model_copy(update={
            "chunk_index": checkpoint.chunk_index + 1,
            "running_total": checkpoint.running_total + len(records),
        })
        return ChunkResult(
            checkpoint=next_checkpoint,
            fetched=len(records),
            inserted=staged,
            done=self.is_exhausted(next_checkpoint),
            errors=errors,
        )
