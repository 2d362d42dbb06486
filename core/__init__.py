"""
Core utilities and configuration for the partner sync engine.

This package provides foundational components used throughout the sync pipelines:

Modules:
    config: Application configuration and environment variable management
    database: Database engine, session factory and dialect helpers
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import FetchError, NetworkError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
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
    "FetchError",
    "APIFetchError",
    "TransformationError",
    "DataFormatError",
    "LoadError",
    "DatabaseError",
    "ForeignKeySkip",
    "TaskAlreadyRunningError",
    "UnknownPipelineError",
    "RetryableError",
    "NonRetryableError",
    "NetworkError",
    "RateLimitError",
    "AuthenticationError",
    "ResourceNotFoundError",
]
