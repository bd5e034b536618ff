"""
Staging writer - persists fetched records as pending StagedRecords.

Ingestion never touches canonical customers; it only appends staged rows
grouped by the run that fetched them. Re-staging a record after a resume is
harmless because the merge is an idempotent upsert keyed by identity.
"""

from typing import List
import logging
import uuid

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import DatabaseConnectionError, DatabaseError
from models.base import ProcessingStatus, SyncSource
from models.staged_record import StagedRecord
from schemas.records import RawRecord

logger = logging.getLogger(__name__)


class StagingWriter:
    """Bulk insert of raw records into staged_records."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def stage(
        self,
        import_id: uuid.UUID,
        source: SyncSource,
        records: List[RawRecord],
        dry_run: bool = False
    ) -> int:
        """
        Stage ``records`` under ``import_id``.

        Returns:
            Number of rows staged (or that would be staged on a dry run)
        """
        if not records:
            return 0
        if dry_run:
            logger.debug(f"Dry run: would stage {len(records)} {source.value} record(s)")
            return len(records)

        rows = [
            StagedRecord(
                source_type=source,
                import_id=import_id,
                external_id=record.external_id,
                email=record.email,
                phone=record.phone,
                full_name=record.full_name,
                amount_cents=record.amount_cents,
                tags=record.tags,
                occurred_at=record.occurred_at,
                raw_payload=record.payload,
                processing_status=ProcessingStatus.PENDING,
            )
            for record in records
        ]

        async with self.session_factory() as session:
            try:
                session.add_all(rows)
                await session.commit()
            except OperationalError as e:
                await session.rollback()
                # Lost connection or lock timeout; the executor retries the chunk in place
                raise DatabaseConnectionError(
                    "Database unavailable while staging records",
                    context={"table_name": "staged_records", "import_id": str(import_id)},
                    original_exception=e
                )
            except Exception as e:
                await session.rollback()
                raise DatabaseError(
                    "Failed to stage records",
                    context={
                        "operation": "INSERT",
                        "table_name": "staged_records",
                        "import_id": str(import_id),
                        "records": len(rows),
                    },
                    original_exception=e
                )

        return len(rows)
