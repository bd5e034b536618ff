"""
Sync run engine: resumable, chunked ingestion and the canonical customer merge.

Modules:
    checkpoint_store: Durable run rows, counters and checkpoints
    state_machine: Legal status transitions, cancel, pause, resume, kill
    executor: Chunk loop with timeout, retry and failure budget
    chunking: Row and byte-bounded CSV splitting
    plans: Work plans for cursor-paginated and pre-split sources
    pagination: Page-at-a-time fetch_page protocol
    staging: Staged record writer
    merge: Bulk-unify merge of staged records
    runner: Admin surface, one asyncio task per run
    command_center: Coordinated multi-source sync
    scheduler: APScheduler housekeeping jobs
    polling: Client-side status polling with adaptive backoff

Subpackages:
    extractors: HTTP (cursor) and CSV (chunked) sources
    transformers: Identity normalization
    loaders: Canonical customer loader

Usage:
    from ingestion.runner import SyncRunner

    runner = SyncRunner()
    run = await runner.start_sync(SyncSource.CRM)
    finished = await runner.wait(run.id)

Error Handling:
    All components raise exceptions from core.exceptions. Chunk-level
    failures are absorbed by the executor up to the failure budget; run-level
    errors surface to the caller.
"""

__all__ = [
    "DataSource",
    "SyncRunner",
    "CommandCenter",
    "ChunkExecutor",
    "RunStateMachine",
    "CheckpointStore",
    "APIExtractor",
    "CSVExtractor",
]
