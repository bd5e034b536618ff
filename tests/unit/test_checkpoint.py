"""
Unit tests for checkpoint blobs
"""

import pytest
from core.exceptions import CheckpointError
from schemas.checkpoint import ChunkCheckpoint, CursorCheckpoint, parse_checkpoint


class TestCheckpointBlob:
    """Serialized form of checkpoints"""

    def test_cursor_blob_is_camel_case(self):
        """Blob uses camelCase keys and a kind tag"""
        blob = CursorCheckpoint(cursor="cus_123", running_total=400, chunk_index=4).to_blob()

        assert blob["kind"] == "cursor"
        assert blob["cursor"] == "cus_123"
        assert blob["runningTotal"] == 400
        assert blob["chunkIndex"] == 4
        assert blob["canResume"] is True
        assert blob["failedChunks"] == []
        assert "running_total" not in blob

    def test_parse_dispatches_on_kind(self):
        """Each kind parses back to its own variant"""
        cursor = parse_checkpoint({"kind": "cursor", "cursor": "p2", "runningTotal": 10})
        chunk = parse_checkpoint({"kind": "chunk", "totalChunks": 6, "chunkIndex": 3, "runningTotal": 1650})

        assert isinstance(cursor, CursorCheckpoint)
        assert cursor.cursor == "p2"
        assert isinstance(chunk, ChunkCheckpoint)
        assert chunk.total_chunks == 6
        assert chunk.running_total == 1650

    def test_parse_none(self):
        assert parse_checkpoint(None) is None

    def test_unknown_kind_raises_checkpoint_error(self):
        """Unreadable blobs surface as CheckpointError"""
        with pytest.raises(CheckpointError):
            parse_checkpoint({"kind": "offset", "offset": 3})

        with pytest.raises(CheckpointError):
            parse_checkpoint({"kind": "chunk", "runningTotal": -1, "totalChunks": 2})


class TestResumability:
    """When a checkpoint can be resumed"""

    def test_cursor_needs_cursor(self):
        assert CursorCheckpoint(cursor="abc").is_resumable()
        assert not CursorCheckpoint(cursor=None).is_resumable()
        assert not CursorCheckpoint(cursor="abc", can_resume=False).is_resumable()

    def test_chunk_needs_remaining_chunks(self):
        assert ChunkCheckpoint(total_chunks=6, chunk_index=3).is_resumable()
        assert not ChunkCheckpoint(total_chunks=6, chunk_index=6).is_resumable()
        assert not ChunkCheckpoint(total_chunks=6, chunk_index=2, can_resume=False).is_resumable()

    def test_has_errors(self):
        assert not ChunkCheckpoint(total_chunks=2).has_errors
        assert ChunkCheckpoint(total_chunks=2, failed_chunks=[1]).has_errors
        assert CursorCheckpoint(error_count=2).has_errors
