"""
Staging-then-merge pipeline, run as a ``bulk-unify`` sync run.

Each chunk drains one batch of pending staged records in id order. The
checkpoint cursor is the last staged id processed, so a resumed merge picks up
right after it and a dry run (which rolls its batch back) still moves forward.

Failures are per record: each record merges inside its own savepoint, and a
record that raises is marked ``error`` while the rest of the batch carries on.
"""

from typing import List, Optional
import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.exceptions import MergeError
from ingestion.executor import ChunkFailurePolicy, ChunkResult, WorkPlan
from ingestion.loaders.customer_loader import CustomerLoader, MergeOutcome
from models.base import ProcessingStatus, utcnow
from models.staged_record import StagedRecord
from schemas.checkpoint import CheckpointBase, CursorCheckpoint

logger = logging.getLogger(__name__)


class MergePlan(WorkPlan):
    """
    One chunk = one batch of pending staged records.

    Attributes:
        batch_size: Staged records per chunk
        import_id: Restrict the merge to records staged by one run
        dry_run: Compute outcomes, then roll the batch back
    """

    failure_policy = ChunkFailurePolicy.RETRY

    def __init__(
        self,
        session_factory: async_sessionmaker,
        run_id: uuid.UUID,
        batch_size: Optional[int] = None,
        dry_run: bool = False,
        import_id: Optional[uuid.UUID] = None
    ):
        self.session_factory = session_factory
        self.run_id = run_id
        self.batch_size = batch_size or settings.MERGE_BATCH_SIZE
        self.dry_run = dry_run
        self.import_id = import_id
        self.outcomes: List[MergeOutcome] = []

    def initial_checkpoint(self) -> CheckpointBase:
        return CursorCheckpoint()

    async def run_chunk(self, checkpoint: CheckpointBase) -> ChunkResult:
        after_id = int(checkpoint.cursor) if checkpoint.cursor else 0
        inserted = updated = 0
        errors: List[str] = []

        query = (
            select(StagedRecord)
            .where(StagedRecord.processing_status == ProcessingStatus.PENDING, StagedRecord.id > after_id)
            .order_by(StagedRecord.id)
            .limit(self.batch_size)
        )
        if self.import_id is not None:
            query = query.where(StagedRecord.import_id == self.import_id)

        async with self.session_factory() as session:
            batch = list((await session.execute(query)).scalars().all())
            staged_ids = [staged.id for staged in batch]
            loader = CustomerLoader(session, run_id=self.run_id)

            for staged_id, staged in zip(staged_ids, batch):
                try:
                    async with session.begin_nested():
                        outcome = await loader.merge(staged)
                except MergeError as e:
                    logger.info(f"Staged record {staged_id} not merged: {e.message}")
                    await self._mark_error(session, staged_id, e.message)
                    errors.append(f"staged record {staged_id}: {e.message}")
                    continue
                except Exception as e:
                    logger.warning(f"Merge failed for staged record {staged_id}: {type(e).__name__}: {e}")
                    await self._mark_error(session, staged_id, str(e))
                    errors.append(f"staged record {staged_id}: {e}")
                    continue

                self.outcomes.append(outcome)
                if outcome == MergeOutcome.INSERTED:
                    inserted += 1
                elif outcome == MergeOutcome.UPDATED:
                    updated += 1
                elif outcome == MergeOutcome.CONFLICT:
                    errors.append(f"staged record {staged_id}: identity conflict")

            if self.dry_run:
                await session.rollback()
            else:
                await session.commit()

        done = len(staged_ids) < self.batch_size
        next_checkpoint = checkpoint.model_copy(update={
            "cursor": str(staged_ids[-1]) if staged_ids else checkpoint.cursor,
            "chunk_index": checkpoint.chunk_index + 1,
            "running_total": checkpoint.running_total + len(staged_ids),
            "can_resume": not done,
        })
        logger.info(
            f"Merge run {self.run_id} batch {checkpoint.chunk_index}: {len(staged_ids)} record(s), "
            f"{inserted} inserted, {updated} updated, {len(errors)} error(s)"
            + (" [dry run]" if self.dry_run else "")
        )
        return ChunkResult(
            checkpoint=next_checkpoint,
            fetched=len(staged_ids),
            inserted=inserted,
            updated=updated,
            done=done,
            errors=errors,
        )

    @staticmethod
    async def _mark_error(session, staged_id: int, message: str) -> None:
        # The record's savepoint was rolled back, so update by id
        await session.execute(
            update(StagedRecord)
            .execution_options(synchronize_session=False)
            .where(StagedRecord.id == staged_id)
            .values(
                processing_status=ProcessingStatus.ERROR,
                error_message=message[:2000],
                processed_at=utcnow(),
            )
        )
