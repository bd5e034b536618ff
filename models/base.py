from datetime import datetime, timezone
from sqlalchemy import JSON, BigInteger, Integer, Enum
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def enum_type(enum_cls, name: str) -> Enum:
    """Persist enum values (not member names) so raw SQL can match them."""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members]
    )


# ============================================================================
# ENUMS
# ============================================================================

class SyncSource(str, enum.Enum):
    """Ingestion sources, plus the two internal run kinds"""
    PAYMENT_A = "payment-a"
    PAYMENT_B = "payment-b"
    CRM = "crm"
    CHAT_PLATFORM = "chat-platform"
    BULK_UNIFY = "bulk-unify"
    COMMAND_CENTER = "command-center"


class RunStatus(str, enum.Enum):
    """Sync run status"""
    IDLE = "idle"
    RUNNING = "running"
    CONTINUING = "continuing"
    PAUSED = "paused"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProcessingStatus(str, enum.Enum):
    """Staged record processing status"""
    PENDING = "pending"
    MERGED = "merged"
    CONFLICT = "conflict"
    ERROR = "error"
    SKIPPED = "skipped"


class LifecycleStage(str, enum.Enum):
    """Canonical customer lifecycle"""
    LEAD = "lead"
    CUSTOMER = "customer"


ACTIVE_STATUSES = frozenset({RunStatus.RUNNING, RunStatus.CONTINUING})

TERMINAL_STATUSES = frozenset({
    RunStatus.COMPLETED,
    RunStatus.COMPLETED_WITH_ERRORS,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
})

INGESTION_SOURCES = (
    SyncSource.PAYMENT_A,
    SyncSource.PAYMENT_B,
    SyncSource.CRM,
    SyncSource.CHAT_PLATFORM,
)
