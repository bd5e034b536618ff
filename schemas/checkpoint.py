"""
Tagged checkpoint structures stored in SyncRun.checkpoint.

Two resume strategies exist, one variant each:

- CursorCheckpoint: the source hands out an opaque cursor per page; the run
  resumes by asking for the page after that cursor.
- ChunkCheckpoint: the input is split up front into a known number of chunks;
  the run resumes at the first chunk not yet completed.

The blob is serialized camelCase, e.g.
``{"kind": "cursor", "cursor": "cus_123", "runningTotal": 400, "chunkIndex": 4, ...}``.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from core.exceptions import CheckpointError


class CheckpointBase(BaseModel):
    """Progress fields shared by every resume strategy"""
    running_total: int = Field(0, alias="runningTotal", ge=0)
    chunk_index: int = Field(0, alias="chunkIndex", ge=0, description="Chunks completed so far")
    last_activity_at: Optional[datetime] = Field(None, alias="lastActivityAt")
    can_resume: bool = Field(True, alias="canResume")
    consecutive_failures: int = Field(0, alias="consecutiveFailures", ge=0)
    failed_chunks: List[int] = Field(default_factory=list, alias="failedChunks")
    error_count: int = Field(0, alias="errorCount", ge=0)

    class Config:
        populate_by_name = True

    def to_blob(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def is_resumable(self) -> bool:
        raise NotImplementedError

    @property
    def has_errors(self) -> bool:
        return bool(self.failed_chunks) or self.error_count > 0


class CursorCheckpoint(CheckpointBase):
    """Checkpoint for sources paginated by an opaque cursor"""
    kind: Literal["cursor"] = "cursor"
    cursor: Optional[str] = None

    def is_resumable(self) -> bool:
        return self.can_resume and self.cursor is not None


class ChunkCheckpoint(CheckpointBase):
    """Checkpoint for input split into a fixed number of chunks"""
    kind: Literal["chunk"] = "chunk"
    total_chunks: int = Field(..., alias="totalChunks", ge=0)

    def is_resumable(self) -> bool:
        return self.can_resume and self.chunk_index < self.total_chunks


Checkpoint = Annotated[Union[CursorCheckpoint, ChunkCheckpoint], Field(discriminator="kind")]

_checkpoint_adapter = TypeAdapter(Checkpoint)


def parse_checkpoint(blob: Optional[Dict[str, Any]]) -> Optional[CheckpointBase]:
    """
    Rebuild a typed checkpoint from its stored blob.

    Raises:
        CheckpointError: If the blob is not a known checkpoint variant
    """
    if blob is None:
        return None
    try:
        return _checkpoint_adapter.validate_python(blob)
    except ValidationError as e:
        raise CheckpointError(
            "Unreadable checkpoint blob",
            context={"operation": "parse", "kind": blob.get("kind") if isinstance(blob, dict) else None},
            original_exception=e
        )
