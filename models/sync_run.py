from sqlalchemy import Column, String, DateTime, Text, Boolean, Index, BigInteger, Uuid, text
import uuid
from models.base import Base, JSONType, SyncSource, RunStatus, enum_type, utcnow


class SyncRun(Base):
    """
    One row per logical synchronization attempt for one source.

    Purpose:
    - Durable run state read by every worker, sweep and poller
    - Counters and checkpoint for resumption
    - Audit trail of cancellations, kills and resume lineage

    Design:
    - At most one row per source in running/continuing, backed by a partial
      unique index on top of the state machine's start check
    - checkpoint holds the serialized tagged checkpoint (schemas.checkpoint)
    - status is the only column written by parties other than the owning executor
    """
    __tablename__ = "sync_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    source = Column(enum_type(SyncSource, "sync_source"), nullable=False)
    status = Column(enum_type(RunStatus, "run_status"), nullable=False, default=RunStatus.RUNNING)
    dry_run = Column(Boolean, nullable=False, default=False)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    # Counters
    total_fetched = Column(BigInteger, nullable=False, default=0)
    total_inserted = Column(BigInteger, nullable=False, default=0)
    total_updated = Column(BigInteger, nullable=False, default=0)

    # Resume state
    checkpoint = Column(JSONType, nullable=True)
    options = Column(JSONType, nullable=True)  # start options, replayed on resume
    resumed_from_id = Column(Uuid, nullable=True)
    superseded_by_id = Column(Uuid, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)
    termination_reason = Column(String(100), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_sync_run_source_status", "source", "status"),
        Index("idx_sync_run_started", "started_at"),
        Index(
            "uq_sync_run_active_source",
            "source",
            unique=True,
            postgresql_where=text("status IN ('running', 'continuing')"),
            sqlite_where=text("status IN ('running', 'continuing')"),
        ),
    )

    def __repr__(self) -> str:
        return f"<SyncRun {self.id} {self.source} {self.status}>"
