"""
Pydantic schemas for data validation and serialization.

Schemas:
    checkpoint: Checkpoint sum type stored on every sync run
    records: Staging record, source page and pagination results
    api: API endpoint request/response schemas

Usage:
    from schemas.checkpoint import CursorCheckpoint, parse_checkpoint
    from schemas.api import SyncRunResponse

Example:
    checkpoint = parse_checkpoint(run.checkpoint)
    if checkpoint is not None and checkpoint.is_resumable():
        ...
"""

__all__ = [
    "CursorCheckpoint",
    "ChunkCheckpoint",
    "RawRecord",
    "SourcePage",
    "PageResult",
    "SyncRunResponse",
    "HealthCheckResponse",
    "StatsResponse",
]
