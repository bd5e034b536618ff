"""
CSV file extractor, split into byte-bounded chunks
"""

import io
import pandas as pd
from typing import List, Dict, Any, Optional
from pathlib import Path
from ingestion.base import ChunkedDataSource, FieldPath
from ingestion.chunking import split_csv_text
from models.base import SyncSource
from core.config import settings
from core.exceptions import CSVExtractionError
import logging

logger = logging.getLogger(__name__)


class CSVExtractor(ChunkedDataSource):
    """
    Extract records from a CSV export (file or in-memory text).

    Supports:
    - Byte-bounded chunks that never cut a quoted multi-line field
    - Header normalization
    - Values kept as strings; typing happens in the staging schema
    """

    def __init__(
        self,
        source: SyncSource,
        file_path: Optional[str] = None,
        text: Optional[str] = None,
        max_bytes: Optional[int] = None,
        max_rows: Optional[int] = None,
        field_map: Optional[Dict[str, FieldPath]] = None,
        amount_in_cents: bool = False,
        encoding: str = "utf-8"
    ):
        super().__init__(source, field_map=field_map, amount_in_cents=amount_in_cents)
        if file_path is None and text is None:
            raise ValueError("CSVExtractor needs a file_path or text")
        self.file_path = Path(file_path) if file_path else None
        self.text = text
        self.max_bytes = max_bytes or settings.CHUNK_BYTE_LIMIT
        self.max_rows = max_rows if max_rows is not None else settings.CHUNK_ROW_LIMIT
        self.encoding = encoding

    def _read_text(self) -> str:
        if self.text is not None:
            return self.text

        if not self.file_path.exists():
            raise CSVExtractionError(
                f"CSV file not found: {self.file_path}",
                context={"file_path": str(self.file_path), "source": self.source_name}
            )

        logger.info(f"Reading CSV from {self.file_path}")
        try:
            return self.file_path.read_text(encoding=self.encoding)
        except (OSError, UnicodeDecodeError) as e:
            raise CSVExtractionError(
                f"Failed to read CSV file: {self.file_path}",
                context={"file_path": str(self.file_path), "encoding": self.encoding},
                original_exception=e
            )

    async def load_chunks(self) -> List[str]:
        """
        Split the document into header-carrying CSV texts.

        Chunks are parsed one at a time by ``parse_chunk``, so a malformed
        chunk only fails itself.

        Raises:
            CSVExtractionError: File missing or unreadable
        """
        chunk_texts = split_csv_text(self._read_text(), self.max_bytes, self.max_rows)
        logger.info(f"Split CSV for {self.source_name} into {len(chunk_texts)} chunk(s)")
        return chunk_texts

    def parse_chunk(self, text: str, index: int) -> List[Dict[str, Any]]:
        """
        Parse one chunk with pandas, all values as strings.

        Raises:
            CSVExtractionError: The chunk is not valid CSV
        """
        try:
            df = pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False)
        except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise CSVExtractionError(
                f"Failed to parse CSV chunk {index}",
                context={"source": self.source_name, "chunk_index": index},
                original_exception=e
            )

        # Normalize column names (strip whitespace, lowercase)
        df.columns = df.columns.str.strip().str.lower().str.replace(' ', '_')

        return df.to_dict(orient="records")
