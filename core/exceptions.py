"""
Custom exceptions for the sync run engine with structured error context.

Every failure raised by the engine carries a context dictionary so it can be
logged, stored on a run row and returned to operators without losing detail.

Exception Hierarchy:
    SyncException (base)
    ├── ExtractionError              source fetch failures (chunk-fatal)
    │   ├── APIExtractionError
    │   ├── CSVExtractionError
    │   └── MalformedPageError
    ├── ChunkError                   chunk abandoned, run continues
    │   ├── ChunkTimeoutError
    │   └── ChunkFailedError
    ├── RunError                     surfaced to the caller, no state mutated
    │   ├── AlreadyRunningError
    │   ├── RunNotFoundError
    │   ├── InvalidTransitionError
    │   ├── RunNotResumableError
    │   └── SyncPausedError
    ├── CheckpointError
    ├── MergeError                   recorded on one staged record
    │   ├── IdentityConflictError
    │   └── MalformedRecordError
    ├── DatabaseError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class SyncException(Exception):
    """
    Base exception for all sync-engine errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (source, run id, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(SyncException):
    """Base exception for source fetch failures."""
    pass


class APIExtractionError(ExtractionError):
    """
    Exception raised when an HTTP source page cannot be retrieved.

    Context should include:
        - api_url: The API endpoint that failed
        - status_code: HTTP status code (if applicable)
        - source: Sync source the page belongs to
    """
    pass


class CSVExtractionError(ExtractionError):
    """
    Exception raised when a bulk CSV file cannot be read or parsed.

    Context should include:
        - file_path: Path to the CSV file
        - chunk_index: Chunk being parsed (if applicable)
    """
    pass


class MalformedPageError(ExtractionError):
    """A source returned a page whose shape cannot be interpreted."""
    pass


# ============================================================================
# Chunk Errors
# ============================================================================

class ChunkError(SyncException):
    """A single chunk was abandoned; the run may continue."""
    pass


class ChunkTimeoutError(ChunkError):
    """A chunk exceeded the per-chunk execution ceiling."""
    pass


class ChunkFailedError(ChunkError):
    """
    A chunk failed after transient retries were exhausted, or with a
    chunk-fatal source error.

    Context should include:
        - run_id: Run the chunk belongs to
        - chunk_index: Zero-based chunk position
        - attempts: Number of attempts made
    """
    pass


# ============================================================================
# Run Errors
# ============================================================================

class RunError(SyncException):
    """Base exception for run lifecycle violations."""
    pass


class AlreadyRunningError(RunError):
    """Starting a run would leave two active runs for one source."""

    def __init__(
        self,
        source: str,
        active_run_id: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        context = context or {}
        context["source"] = source
        if active_run_id is not None:
            context["active_run_id"] = str(active_run_id)
        super().__init__(f"A sync for {source} is already running", context)
        self.source = source
        self.active_run_id = active_run_id


class RunNotFoundError(RunError):
    """No run exists with the requested id."""
    pass


class InvalidTransitionError(RunError):
    """
    A status change not permitted by the run state machine.

    Context should include:
        - run_id: Run being transitioned
        - from_status: Current status
        - to_status: Requested status
    """
    pass


class RunNotResumableError(RunError):
    """The run is not failed/paused, is superseded, or has no resumable checkpoint."""
    pass


class SyncPausedError(RunError):
    """The global sync kill switch is engaged."""
    pass


# ============================================================================
# Checkpoint Errors
# ============================================================================

class CheckpointError(SyncException):
    """
    Exception raised when checkpoint handling fails.

    Context should include:
        - run_id: Run whose checkpoint failed
        - operation: Operation that failed (parse, advance)
    """
    pass


# ============================================================================
# Merge Errors
# ============================================================================

class MergeError(SyncException):
    """Base exception for per-record merge failures."""
    pass


class IdentityConflictError(MergeError):
    """Email and phone of one staged record resolve to two different customers."""
    pass


class MalformedRecordError(MergeError):
    """A staged record carries no usable identity or unparseable fields."""
    pass


# ============================================================================
# Database Errors
# ============================================================================

class DatabaseError(SyncException):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation
        - table_name: Name of the table
    """
    pass


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SyncException):
    """
    Mixin for transient errors retried within the same chunk.

    Use this for:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Temporary database connection issues
    - Service unavailable (HTTP 503)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(SyncException):
    """
    Mixin for permanent errors that should NOT be retried.

    Use this for:
    - Authentication failures (HTTP 401, 403)
    - Invalid data format
    - Resource not found (HTTP 404)
    """
    pass


# ============================================================================
# Specific Retryable Errors
# ============================================================================

class NetworkError(RetryableError, APIExtractionError):
    """Network-related errors that should be retried."""
    pass


class RateLimitError(RetryableError, APIExtractionError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class DatabaseConnectionError(RetryableError, DatabaseError):
    """Database connection errors that should be retried."""
    pass


# ============================================================================
# Specific Non-Retryable Errors
# ============================================================================

class AuthenticationError(NonRetryableError, APIExtractionError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, ExtractionError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass
