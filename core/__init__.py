"""
Core utilities and configuration for the catalog reconciliation engine.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Database connection and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import DuplicateLinkError, InvalidTransitionError
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
    "build_engine",
    "dispose_engine",
    "setup_logging",
    # Exceptions
    "ReconciliationError",
    "RetryableError",
    "NonRetryableError",
    "SourceError",
    "SourceUnavailableError",
    "RateLimitError",
    "AuthenticationError",
    "LinkError",
    "DuplicateLinkError",
    "WorkflowError",
    "InvalidTransitionError",
    "PublishValidationError",
    "MergeError",
    "MergeConflictError",
    "RecordNotFoundError",
    "UnknownFieldError",
    "DatabaseError",
]
