"""
Custom exceptions for the partition refresh pipeline with structured error context.

This module provides the exception hierarchy used by every stage of a
refresh cycle. Each exception carries context information for debugging
and for the partition event log.

Exception Hierarchy:
    ETLException (base)
    ├── ConfigurationError
    ├── EnumerationError
    ├── ProbeError
    ├── SourceError
    │   ├── SourceUnavailableError
    │   ├── SourceNotFoundError
    │   ├── SourceAccessError
    │   └── SourceFormatError
    ├── TransformationError
    │   └── DataFormatError
    ├── LoadError
    ├── StagingError
    ├── CommitError
    ├── StateStoreError
    └── RetryableError / NonRetryableError (mixins)

Cycle-level errors (EnumerationError, StateStoreError) abort the whole
cycle. Everything else is scoped to a single partition.
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ETLException(Exception):
    """
    Base exception for all refresh-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (partition key, table, etc.)
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

    @property
    def retryable(self) -> bool:
        """Whether a later attempt may succeed without operator action."""
        return isinstance(self, RetryableError)

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
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for transient errors: network timeouts, throttling, a storage
    engine that is briefly unavailable. The partition is retried on a later
    cycle.
    """
    pass


class NonRetryableError(ETLException):
    """
    Mixin for permanent errors: malformed records, missing objects,
    authentication failures. Retrying the same source content cannot help.
    """
    pass


# ============================================================================
# Cycle-level Errors
# ============================================================================

class ConfigurationError(NonRetryableError):
    """Raised when the runtime cannot be wired from settings."""
    pass


class EnumerationError(ETLException):
    """
    Exception raised when the partition key source is unreachable or
    returns something unusable. Fatal to the cycle; nothing is touched.

    Context should include:
        - enumerator: Enumerator class name
        - location: Query, prefix or directory being enumerated
    """
    pass


class StateStoreError(ETLException):
    """
    Exception raised when the partition state store cannot be read or
    written. Fatal to the cycle, since per-key mutual exclusion can no
    longer be guaranteed.

    Context should include:
        - operation: Store operation that failed
        - partition_key: Key involved (if any)
    """
    pass


# ============================================================================
# Source Errors
# ============================================================================

class ProbeError(ETLException):
    """
    Exception raised when a cheap metadata probe for a partition fails.
    How it is interpreted depends on the configured probe failure policy.
    """
    pass


class SourceError(ETLException):
    """Base exception for object storage read failures."""
    pass


class SourceUnavailableError(RetryableError, SourceError):
    """Network errors, timeouts and 5xx responses from the object store."""
    pass


class SourceNotFoundError(NonRetryableError, SourceError):
    """The object backing a partition does not exist."""
    pass


class SourceAccessError(NonRetryableError, SourceError):
    """Authentication or authorization failure against the object store."""
    pass


class SourceFormatError(NonRetryableError, SourceError):
    """
    Raw bytes could not be decoded into records.

    Context should include:
        - partition_key: Partition being read
        - line_number: Line that failed to decode (if applicable)
    """
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(ETLException):
    """Base exception for transformation failures."""
    pass


class DataFormatError(NonRetryableError, TransformationError):
    """A raw record does not satisfy the transformation's expectations."""
    pass


# ============================================================================
# Load / Commit Errors
# ============================================================================

class LoadError(ETLException):
    """
    Exception raised when loading a partition into staging fails.

    The retryable flag is decided by the failure that aborted the attempt,
    not by the subclass.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retryable: bool = True
    ):
        super().__init__(message, context, original_exception)
        self._retryable = retryable
        self.context["retryable"] = retryable

    @property
    def retryable(self) -> bool:
        return self._retryable


class StagingError(RetryableError):
    """
    Exception raised when the storage engine rejects a staging write.

    Context should include:
        - partition_key: Partition being staged
        - staging_handle: Segment identifier
    """
    pass


class CommitError(ETLException):
    """
    Exception raised when repointing a partition to its staged content
    fails. The previously visible content stays in place.
    """
    pass


class PartitionBusyError(ETLException):
    """
    Raised when an operator action needs a partition that is being
    refreshed (its lease is held by a load in this or another process).

    Context should include:
        - partition_key: Partition that is busy
    """
    pass
