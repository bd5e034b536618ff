from sqlalchemy import Column, String, DateTime, Index, BigInteger, ForeignKey, Text, Uuid
from models.base import Base, BigIntId, JSONType, LifecycleStage, enum_type, utcnow


class CanonicalCustomer(Base):
    """
    Unified customer identity produced by the merge pipeline.

    Keyed by normalized email, else by E.164-style phone. Both keys are
    unique so merging the same staged record twice converges on one row.
    """
    __tablename__ = "canonical_customers"

    id = Column(BigIntId, primary_key=True, autoincrement=True)

    email = Column(String(320), nullable=True, unique=True)
    phone = Column(String(32), nullable=True, unique=True)
    full_name = Column(String(255), nullable=True)

    source_ids = Column(JSONType, nullable=False, default=dict)  # {source: external_id}
    tags = Column(JSONType, nullable=False, default=list)
    total_spend_cents = Column(BigInteger, nullable=False, default=0)
    lifecycle_stage = Column(
        enum_type(LifecycleStage, "lifecycle_stage"),
        nullable=False,
        default=LifecycleStage.LEAD
    )

    first_seen_at = Column(DateTime, nullable=True)
    last_seen_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_customer_lifecycle", "lifecycle_stage"),
    )


class MergeConflict(Base):
    """A staged record whose email and phone point at two different customers."""
    __tablename__ = "merge_conflicts"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    staged_record_id = Column(
        BigInteger,
        ForeignKey("staged_records.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )
    sync_run_id = Column(Uuid, nullable=True)
    email_customer_id = Column(BigInteger, nullable=True)
    phone_customer_id = Column(BigInteger, nullable=True)
    reason = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
