from sqlalchemy import Column, String, DateTime, Text, Index, BigInteger, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from models.base import Base, BigIntId, JSONType, SyncSource, ProcessingStatus, enum_type, utcnow


class StagedRecord(Base):
    """
    Raw ingested item awaiting merge into a canonical customer.

    Lifecycle:
    - Created as pending by a source run's chunks
    - Moved exactly once to merged/conflict/error/skipped by the merge pipeline
    - Never deleted by the engine
    """
    __tablename__ = "staged_records"

    id = Column(BigIntId, primary_key=True, autoincrement=True)

    source_type = Column(enum_type(SyncSource, "sync_source"), nullable=False)
    import_id = Column(Uuid, nullable=False)  # run that staged it; no FK so retention can drop runs
    external_id = Column(String(255), nullable=True)

    # Raw identity fields, normalized only at merge time
    email = Column(String(320), nullable=True)
    phone = Column(String(64), nullable=True)
    full_name = Column(String(255), nullable=True)

    amount_cents = Column(BigInteger, nullable=True)
    tags = Column(JSONType, nullable=True)
    occurred_at = Column(DateTime, nullable=True)
    raw_payload = Column(JSONType, nullable=True)

    processing_status = Column(
        enum_type(ProcessingStatus, "processing_status"),
        nullable=False,
        default=ProcessingStatus.PENDING
    )
    error_message = Column(Text, nullable=True)
    merged_customer_id = Column(BigInteger, ForeignKey("canonical_customers.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    merged_customer = relationship("CanonicalCustomer")

    __table_args__ = (
        Index("idx_staged_import_status", "import_id", "processing_status"),
        Index("idx_staged_status_id", "processing_status", "id"),
    )
