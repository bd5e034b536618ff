"""
SQLAlchemy ORM models for database tables.

Models:
    base: Declarative base, portable column types and shared enums
          (SyncSource, RunStatus, ProcessingStatus, LifecycleStage)
    sync_run: One row per logical sync run, with counters and checkpoint
    staged_record: Raw ingested rows awaiting merge
    customer: Canonical customers and recorded merge conflicts
    system_setting: Operator switches such as the global sync pause

Database Schema:
    PostgreSQL in production (JSONB, partial unique index for the single
    active run per source); the same metadata creates cleanly on SQLite.

Usage:
    from models import SyncRun, StagedRecord, CanonicalCustomer
    from models.base import SyncSource, RunStatus

Relationships:
    - SyncRun → StagedRecord (import_id, one-to-many, no FK)
    - StagedRecord → CanonicalCustomer (merged_customer_id)
    - StagedRecord → MergeConflict (one-to-one when conflicting)
"""

from models.base import (
    Base,
    SyncSource,
    RunStatus,
    ProcessingStatus,
    LifecycleStage,
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
)
from models.sync_run import SyncRun
from models.customer import CanonicalCustomer, MergeConflict
from models.staged_record import StagedRecord
from models.system_setting import SystemSetting

__all__ = [
    "Base",
    "SyncSource",
    "RunStatus",
    "ProcessingStatus",
    "LifecycleStage",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "SyncRun",
    "StagedRecord",
    "CanonicalCustomer",
    "MergeConflict",
    "SystemSetting",
]
