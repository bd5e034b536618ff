"""
Abstract base classes for data sources feeding sync runs
"""

from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional, Union
from datetime import datetime
import logging

from ingestion.transformers.identity import parse_amount_cents, parse_datetime
from models.base import SyncSource
from schemas.records import RawRecord, SourcePage

logger = logging.getLogger(__name__)

FieldPath = Union[str, List[str]]

DEFAULT_FIELD_MAP: Dict[str, FieldPath] = {
    "id": "id",
    "email": "email",
    "phone": "phone",
    "name": "name",
    "amount": "amount",
    "tags": "tags",
    "timestamp": "created_at",
}


class DataSource(ABC):
    """
    Abstract base class for all data sources.

    A source only knows how to retrieve records and map them onto the
    identity fields staging needs; runs, checkpoints and staging are owned
    by the engine.

    Field map values are dotted paths into a record ("customer.email"); a
    list of paths is joined with spaces (first and last name).
    """

    resume_strategy = "cursor"

    def __init__(
        self,
        source: SyncSource,
        field_map: Optional[Dict[str, FieldPath]] = None,
        amount_in_cents: bool = False,
        rate_limited: bool = True
    ):
        self.source = source
        self.field_map = {**DEFAULT_FIELD_MAP, **(field_map or {})}
        self.amount_in_cents = amount_in_cents
        self.rate_limited = rate_limited

    @property
    def source_name(self) -> str:
        return self.source.value

    def extract_record_id(self, record: Dict[str, Any]) -> Optional[str]:
        """Extract unique identifier from a record"""
        value = self._lookup(record, self.field_map["id"])
        return str(value) if value not in (None, "") else None

    def extract_timestamp(self, record: Dict[str, Any]) -> Optional[datetime]:
        """Extract the record's event time as naive UTC"""
        return parse_datetime(self._lookup(record, self.field_map["timestamp"]))

    def to_raw_record(self, record: Dict[str, Any]) -> RawRecord:
        """Map a source record onto the staging schema"""
        return RawRecord(
            external_id=self.extract_record_id(record),
            email=self._lookup(record, self.field_map["email"]),
            phone=self._lookup(record, self.field_map["phone"]),
            full_name=self._lookup(record, self.field_map["name"]),
            amount_cents=parse_amount_cents(
                self._lookup(record, self.field_map["amount"]),
                already_cents=self.amount_in_cents
            ),
            tags=self._lookup(record, self.field_map["tags"]),
            occurred_at=self.extract_timestamp(record),
            payload=record,
        )

    async def close(self) -> None:
        """Release network clients or file handles"""

    @staticmethod
    def _lookup(record: Dict[str, Any], path: FieldPath) -> Any:
        if isinstance(path, list):
            parts = [DataSource._lookup(record, p) for p in path]
            joined = " ".join(str(p).strip() for p in parts if p not in (None, ""))
            return joined or None

        value: Any = record
        for key in path.split("."):
            if not isinstance(value, dict):
                return None
            value = value.get(key)
        return value


class CursorDataSource(DataSource):
    """Source paginated by an opaque cursor handed out with each page."""

    resume_strategy = "cursor"

    @abstractmethod
    async def fetch(self, cursor: Optional[str] = None) -> SourcePage:
        """
        Fetch the page following ``cursor`` (the first page when None).

        Raises:
            RetryableError: Transient failure, retried by the executor
            ExtractionError: Page cannot be retrieved or interpreted
        """


class ChunkedDataSource(DataSource):
    """Source whose whole input is available up front and split into chunks."""

    resume_strategy = "chunk"

    def __init__(self, source: SyncSource, **kwargs):
        kwargs.setdefault("rate_limited", False)
        super().__init__(source, **kwargs)

    @abstractmethod
    async def load_chunks(self) -> List[Any]:
        """
        Return the input as ordered chunks.

        Must return the same chunks on every call so a resumed run can skip
        the chunks its checkpoint reports as done. A chunk may be raw input
        that only ``parse_chunk`` turns into records.
        """

    def parse_chunk(self, chunk: Any, index: int) -> List[Dict[str, Any]]:
        """
        Turn one chunk into records while the run processes it.

        Raises:
            ExtractionError: This chunk cannot be interpreted; other chunks
                are unaffected
        """
        return chunk
