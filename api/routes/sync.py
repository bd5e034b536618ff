"""
Operator endpoints for sync runs: start, cancel, pause, resume, kill, inspect
"""

from fastapi import APIRouter, Depends, Query, Request
from typing import List, Optional
from uuid import UUID
import logging

from api.dependencies import get_command_center, get_runner, require_admin_key
from core.config import settings
from ingestion.command_center import CommandCenter
from ingestion.runner import ALL_SOURCES, SyncRunner
from models.base import INGESTION_SOURCES, RunStatus, SyncSource
from schemas.api import (
    CancelResponse,
    CommandCenterRequest,
    KillZombiesRequest,
    KillZombiesResponse,
    PausedSetting,
    ResumeResponse,
    RunTransitionResponse,
    StartSyncRequest,
    StartSyncResponse,
    SyncRunResponse,
    UnifyRequest,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["Sync"], dependencies=[Depends(require_admin_key)])


def _ingestion_source(source: str) -> SyncSource:
    try:
        parsed = SyncSource(source)
    except ValueError:
        raise ValueError(f"Unknown source: {source}")
    if parsed not in INGESTION_SOURCES:
        raise ValueError(f"{source} is not started through this endpoint")
    return parsed


def _respond(run) -> SyncRunResponse:
    return SyncRunResponse.from_run(run, settings.STALE_WARNING_SECONDS)


@router.post("/{source}/start", response_model=StartSyncResponse, status_code=202)
async def start_sync(
    source: str,
    request: Request,
    body: Optional[StartSyncRequest] = None,
    runner: SyncRunner = Depends(get_runner)
):
    """Start a sync of one ingestion source in the background."""
    body = body or StartSyncRequest()
    run = await runner.start_sync(_ingestion_source(source), dry_run=body.dry_run, options=body.options)
    logger.info(f"[{getattr(request.state, 'request_id', '-')}] Started {source} sync run {run.id}")
    return StartSyncResponse(run_id=run.id, status=run.status)


@router.post("/{source}/cancel", response_model=CancelResponse)
async def cancel_sync(source: str, runner: SyncRunner = Depends(get_runner)):
    """Cancel every open run of ``source``, or of every source with ``all``."""
    target = ALL_SOURCES if source == ALL_SOURCES else SyncSource(source)
    run_ids = await runner.cancel_sync(target)
    return CancelResponse(cancelled_count=len(run_ids), run_ids=run_ids)


@router.post("/runs/{run_id}/cancel", response_model=RunTransitionResponse)
async def cancel_run(run_id: UUID, runner: SyncRunner = Depends(get_runner)):
    changed = await runner.cancel_run(run_id)
    run = await runner.get_run_status(run_id)
    return RunTransitionResponse(run_id=run_id, changed=changed, status=run.status)


@router.post("/runs/{run_id}/pause", response_model=RunTransitionResponse)
async def pause_run(run_id: UUID, runner: SyncRunner = Depends(get_runner)):
    changed = await runner.pause_run(run_id)
    run = await runner.get_run_status(run_id)
    return RunTransitionResponse(run_id=run_id, changed=changed, status=run.status)


@router.post("/runs/{run_id}/resume", response_model=ResumeResponse, status_code=202)
async def resume_run(run_id: UUID, runner: SyncRunner = Depends(get_runner)):
    new_run = await runner.resume_sync(run_id)
    return ResumeResponse(new_run_id=new_run.id, resumed_from=run_id)


@router.post("/zombies/kill", response_model=KillZombiesResponse)
async def kill_zombies(
    body: Optional[KillZombiesRequest] = None,
    runner: SyncRunner = Depends(get_runner)
):
    """Fail active runs idle past the threshold (operator-forced)."""
    threshold = body.threshold_seconds if body else None
    run_ids = await runner.force_kill_zombies(threshold, manual=True)
    return KillZombiesResponse(killed_count=len(run_ids), run_ids=run_ids)


@router.get("/runs/{run_id}", response_model=SyncRunResponse)
async def get_run(run_id: UUID, runner: SyncRunner = Depends(get_runner)):
    return _respond(await runner.get_run_status(run_id))


@router.get("/runs", response_model=List[SyncRunResponse])
async def list_runs(
    source: Optional[SyncSource] = Query(None, description="Filter by source"),
    status: Optional[List[RunStatus]] = Query(None, description="Filter by status (repeatable)"),
    limit: int = Query(50, ge=1, le=500, description="Maximum runs to return"),
    runner: SyncRunner = Depends(get_runner)
):
    runs = await runner.list_runs(source=source, statuses=status, limit=limit)
    return [_respond(run) for run in runs]


@router.post("/command-center", response_model=StartSyncResponse, status_code=202)
async def command_center(
    body: Optional[CommandCenterRequest] = None,
    command_center: CommandCenter = Depends(get_command_center)
):
    """Start a coordinated sync of several sources, optionally followed by a merge."""
    body = body or CommandCenterRequest()
    run = await command_center.start(
        sources=body.sources,
        mode=body.mode,
        dry_run=body.dry_run,
        merge_after=body.merge_after
    )
    return StartSyncResponse(run_id=run.id, status=run.status)


@router.post("/unify", response_model=StartSyncResponse, status_code=202)
async def unify(
    body: Optional[UnifyRequest] = None,
    runner: SyncRunner = Depends(get_runner)
):
    """Start a bulk-unify run merging pending staged records."""
    body = body or UnifyRequest()
    run = await runner.run_merge(dry_run=body.dry_run, batch_size=body.batch_size)
    return StartSyncResponse(run_id=run.id, status=run.status)


@router.get("/settings/paused", response_model=PausedSetting)
async def get_paused(runner: SyncRunner = Depends(get_runner)):
    return PausedSetting(paused=await runner.is_sync_paused())


@router.put("/settings/paused", response_model=PausedSetting)
async def set_paused(body: PausedSetting, runner: SyncRunner = Depends(get_runner)):
    return PausedSetting(paused=await runner.set_sync_paused(body.paused))
