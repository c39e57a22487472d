"""
Core utilities and configuration for the partition refresh service.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Async engine and session factory construction
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities
    clock: UTC timestamps shared by models and the orchestrator

Usage:
    from core.config import settings
    from core.database import create_engine, create_session_maker
    from core.exceptions import LoadError, StateStoreError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Open a session
    engine = create_engine(settings.DATABASE_URL)
    session_maker = create_session_maker(engine)
    async with session_maker() as session:
        pass
"""

from core.config import settings
from core.clock import utcnow
from core.database import create_engine, create_session_maker
from core.logging import setup_logging
from core.exceptions import (
    ETLException,
    ConfigurationError,
    EnumerationError,
    StateStoreError,
    ProbeError,
    SourceError,
    SourceUnavailableError,
    SourceNotFoundError,
    SourceAccessError,
    SourceFormatError,
    TransformationError,
    DataFormatError,
    LoadError,
    StagingError,
    CommitError,
    PartitionBusyError,
    RetryableError,
    NonRetryableError,
)

__all__ = [
    "settings",
    "create_engine",
    "create_session_maker",
    "setup_logging",
    "utcnow",
    # Exceptions
    "ETLException",
    "ConfigurationError",
    "EnumerationError",
    "StateStoreError",
    "ProbeError",
    "SourceError",
    "SourceUnavailableError",
    "SourceNotFoundError",
    "SourceAccessError",
    "SourceFormatError",
    "TransformationError",
    "DataFormatError",
    "LoadError",
    "StagingError",
    "CommitError",
    "PartitionBusyError",
    "RetryableError",
    "NonRetryableError",
]
