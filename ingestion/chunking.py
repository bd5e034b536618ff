"""
Splitting large inputs into bounded chunks.

Two policies:

- split_rows: fixed number of already-parsed records per chunk.
- split_csv_text: cumulative byte size of raw CSV text, never cutting a
  record (quoted fields may span lines) and repeating the header line at the
  start of every chunk so each chunk parses on its own.

Concatenating the chunks in order (with the repeated headers dropped) gives
back the input exactly.
"""

import io
from typing import Iterator, List, Sequence, TypeVar

T = TypeVar("T")


def split_rows(rows: Sequence[T], chunk_size: int) -> List[List[T]]:
    """Split ``rows`` into consecutive chunks of at most ``chunk_size`` items."""
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")
    return [list(rows[i:i + chunk_size]) for i in range(0, len(rows), chunk_size)]


def iter_csv_records(text: str) -> Iterator[str]:
    """
    Yield complete CSV records, line terminators included.

    Lines end at LF only, so CRLF stays whole and characters such as U+2028
    or form feed are kept as field data.

    A line whose running count of double quotes is odd ends inside a quoted
    field, so the following line belongs to the same record. Escaped quotes
    ("") contribute two and leave the parity unchanged.
    """
    pending = ""
    quotes = 0
    for line in io.StringIO(text, newline="\n"):
        pending += line
        quotes += line.count('"')
        if quotes % 2 == 0:
            yield pending
            pending = ""
            quotes = 0
    if pending:
        # Unterminated quote at EOF; keep the remainder as one record
        yield pending


def split_csv_text(text: str, max_bytes: int, max_rows: int = 0) -> List[str]:
    """
    Split CSV text into header-prefixed chunks of at most ``max_bytes``.

    Args:
        text: Full CSV document, first record is the header
        max_bytes: UTF-8 size budget per chunk, header included
        max_rows: Optional cap on data records per chunk (0 disables)

    Returns:
        Chunk texts; empty when the document has no data records. A single
        record bigger than the budget is emitted as its own chunk.
    """
    if max_bytes < 1:
        raise ValueError("max_bytes must be positive")

    records = iter_csv_records(text)
    header = next(records, None)
    if header is None:
        return []
    if not header.endswith("\n"):
        # Header without a terminator means no data records follow
        return []

    header_size = len(header.encode("utf-8"))
    chunks: List[str] = []
    body: List[str] = []
    body_size = 0

    for record in records:
        size = len(record.encode("utf-8"))
        over_bytes = body and header_size + body_size + size > max_bytes
        over_rows = max_rows and len(body) >= max_rows
        if over_bytes or over_rows:
            chunks.append(header + "".join(body))
            body, body_size = [], 0
        body.append(record)
        body_size += size

    if body:
        chunks.append(header + "".join(body))
    return chunks


def strip_header(chunk: str) -> str:
    """Return a chunk's data records without its leading header."""
    records = iter_csv_records(chunk)
    next(records, None)
    return "".join(records)
