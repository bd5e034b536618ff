"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime, timedelta
from uuid import UUID

from models.base import SyncSource, RunStatus, ProcessingStatus, ACTIVE_STATUSES, utcnow
from schemas.checkpoint import parse_checkpoint


# ============================================================================
# Run Schemas
# ============================================================================

class SyncRunResponse(BaseModel):
    """A sync run as observed by pollers and operators"""
    id: UUID
    source: SyncSource
    status: RunStatus
    dry_run: bool = False
    started_at: datetime
    completed_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    total_fetched: int = 0
    total_inserted: int = 0
    total_updated: int = 0
    error_message: Optional[str] = None
    termination_reason: Optional[str] = None
    resumed_from_id: Optional[UUID] = None
    superseded_by_id: Optional[UUID] = None
    checkpoint: Optional[Dict[str, Any]] = None

    # Derived from the checkpoint
    running_total: int = 0
    chunk_index: int = 0
    total_chunks: Optional[int] = None
    cursor: Optional[str] = None
    can_resume: bool = False
    is_active: bool = False
    is_stale: bool = False

    class Config:
        from_attributes = True

    @classmethod
    def from_run(cls, run, stale_after_seconds: Optional[int] = None) -> "SyncRunResponse":
        response = cls.model_validate(run)
        checkpoint = parse_checkpoint(run.checkpoint)
        updates: Dict[str, Any] = {"is_active": run.status in ACTIVE_STATUSES}

        if checkpoint is not None:
            updates.update(
                running_total=checkpoint.running_total,
                chunk_index=checkpoint.chunk_index,
                total_chunks=getattr(checkpoint, "total_chunks", None),
                cursor=getattr(checkpoint, "cursor", None),
                can_resume=(
                    run.status in (RunStatus.FAILED, RunStatus.PAUSED)
                    and run.superseded_by_id is None
                    and checkpoint.is_resumable()
                ),
            )

        if stale_after_seconds is not None and updates["is_active"] and run.last_activity_at:
            updates["is_stale"] = run.last_activity_at < utcnow() - timedelta(seconds=stale_after_seconds)

        return response.model_copy(update=updates)


class StartSyncRequest(BaseModel):
    """Options for starting a source sync"""
    dry_run: bool = False
    options: Dict[str, Any] = Field(default_factory=dict)


class StartSyncResponse(BaseModel):
    run_id: UUID
    status: RunStatus


class CancelResponse(BaseModel):
    cancelled_count: int
    run_ids: List[UUID] = Field(default_factory=list)


class KillZombiesRequest(BaseModel):
    threshold_seconds: Optional[int] = Field(None, ge=0, description="Defaults to STALE_THRESHOLD_SECONDS")


class KillZombiesResponse(BaseModel):
    killed_count: int
    run_ids: List[UUID] = Field(default_factory=list)


class ResumeResponse(BaseModel):
    new_run_id: UUID
    resumed_from: UUID


class RunTransitionResponse(BaseModel):
    """Result of a cooperative per-run request (cancel, pause)"""
    run_id: UUID
    changed: bool
    status: RunStatus


class CommandCenterRequest(BaseModel):
    sources: Optional[List[SyncSource]] = None
    mode: Literal["today", "full"] = "today"
    dry_run: bool = False
    merge_after: bool = True

    @validator("sources")
    def only_ingestion_sources(cls, v):
        if v is None:
            return v
        internal = {SyncSource.BULK_UNIFY, SyncSource.COMMAND_CENTER}
        if any(s in internal for s in v):
            raise ValueError("command center coordinates ingestion sources only")
        return v


class UnifyRequest(BaseModel):
    dry_run: bool = False
    batch_size: Optional[int] = Field(None, ge=1, le=2000)


class PausedSetting(BaseModel):
    paused: bool


# ============================================================================
# Health & Stats Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    sync_paused: bool = False
    active_runs: int = 0
    stale_runs: int = 0
    # Declared last so the validator sees the fields above
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"
        if values.get("stale_runs", 0) > 0:
            return "degraded"
        return "healthy"


class SourceStats(BaseModel):
    source: SyncSource
    active_run: Optional[SyncRunResponse] = None
    last_run: Optional[SyncRunResponse] = None
    total_runs: int = 0


class StatsResponse(BaseModel):
    sources: List[SourceStats] = Field(default_factory=list)
    staged_by_status: Dict[ProcessingStatus, int] = Field(default_factory=dict)
    canonical_customers: int = 0
    open_conflicts: int = 0
