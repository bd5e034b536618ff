"""
Pydantic schemas for records flowing from sources into staging
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from uuid import UUID


class RawRecord(BaseModel):
    """
    One record fetched from a source, mapped to the identity fields staging needs.

    Ensures:
    - Blank strings become None
    - Tags are always a list of non-empty strings
    - Timestamps are naive UTC
    """

    external_id: Optional[str] = Field(None, max_length=255)
    email: Optional[str] = Field(None, max_length=320)
    phone: Optional[str] = Field(None, max_length=64)
    full_name: Optional[str] = Field(None, max_length=255)
    amount_cents: Optional[int] = Field(None, ge=0)
    tags: List[str] = Field(default_factory=list)
    occurred_at: Optional[datetime] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    @validator("external_id", "email", "phone", "full_name", pre=True)
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @validator("tags", pre=True)
    def clean_tags(cls, v):
        """Ensure tags is a list"""
        if v is None:
            return []
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        if isinstance(v, list):
            return [str(t).strip() for t in v if str(t).strip()]
        return []

    @validator("occurred_at")
    def to_naive_utc(cls, v):
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class SourcePage(BaseModel):
    """What a cursor-paginated source returns for one fetch"""
    records: List[Dict[str, Any]] = Field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None


class PageResult(BaseModel):
    """
    Result of one fetch_page call in the pagination protocol.

    run_id is minted on the first call and must be passed back, together
    with next_cursor, on every following call of the same logical run.
    """
    run_id: UUID
    records: List[RawRecord] = Field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None
    error: Optional[str] = None
