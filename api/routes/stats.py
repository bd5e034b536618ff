"""
Sync statistics endpoint
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db
from core.config import settings
from schemas.api import SourceStats, StatsResponse, SyncRunResponse
from models.base import ACTIVE_STATUSES, ProcessingStatus, SyncSource
from models.customer import CanonicalCustomer, MergeConflict
from models.staged_record import StagedRecord
from models.sync_run import SyncRun
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Get sync statistics.

    Returns:
    - Latest and active run per source
    - Staged records per processing status
    - Canonical customer and open conflict counts
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(f"[{request_id}] GET /stats")

    # ========== Per-Source Runs ==========

    sources = []
    for source in SyncSource:
        latest = await db.scalar(
            select(SyncRun).where(SyncRun.source == source).order_by(SyncRun.started_at.desc()).limit(1)
        )
        active = await db.scalar(
            select(SyncRun).where(SyncRun.source == source, SyncRun.status.in_(list(ACTIVE_STATUSES))).limit(1)
        )
        total_runs = await db.scalar(
            select(func.count()).select_from(SyncRun).where(SyncRun.source == source)
        )
        sources.append(SourceStats(
            source=source,
            last_run=SyncRunResponse.from_run(latest, settings.STALE_WARNING_SECONDS) if latest else None,
            active_run=SyncRunResponse.from_run(active, settings.STALE_WARNING_SECONDS) if active else None,
            total_runs=total_runs or 0
        ))

    # ========== Staging & Merge ==========

    staged_result = await db.execute(
        select(StagedRecord.processing_status, func.count()).group_by(StagedRecord.processing_status)
    )
    staged_by_status = {status: 0 for status in ProcessingStatus}
    staged_by_status.update({status: count for status, count in staged_result.all()})

    customers = await db.scalar(select(func.count()).select_from(CanonicalCustomer))
    conflicts = await db.scalar(
        select(func.count()).select_from(MergeConflict)
        .join(StagedRecord, StagedRecord.id == MergeConflict.staged_record_id)
        .where(StagedRecord.processing_status == ProcessingStatus.CONFLICT)
    )

    logger.info(f"[{request_id}] Stats: {customers or 0} customers, {conflicts or 0} open conflicts")

    return StatsResponse(
        sources=sources,
        staged_by_status=staged_by_status,
        canonical_customers=customers or 0,
        open_conflicts=conflicts or 0
    )
