"""
Core utilities and configuration for the sync run engine.

This package provides foundational components used by every other package:

Modules:
    config: Application configuration and environment variable management
    database: Async engine and session factory
    exceptions: Exception hierarchy (transient, chunk-fatal, run-fatal, merge)
    logging: Logging configuration

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import AlreadyRunningError, NetworkError
    from core.logging import setup_logging

Example:
    setup_logging()

    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    # Exceptions
    "SyncException",
    "ExtractionError",
    "APIExtractionError",
    "CSVExtractionError",
    "MalformedPageError",
    "ChunkError",
    "ChunkTimeoutError",
    "ChunkFailedError",
    "RunError",
    "AlreadyRunningError",
    "RunNotFoundError",
    "InvalidTransitionError",
    "RunNotResumableError",
    "SyncPausedError",
    "CheckpointError",
    "MergeError",
    "IdentityConflictError",
    "MalformedRecordError",
    "DatabaseError",
    "RetryableError",
    "NonRetryableError",
    "NetworkError",
    "RateLimitError",
    "DatabaseConnectionError",
    "AuthenticationError",
    "ResourceNotFoundError",
]
