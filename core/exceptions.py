"""
Custom exceptions for the reconciliation engine with structured error context.

This module provides the exception hierarchy used throughout ingestion,
matching, merging and the publish workflow. Each exception carries context
information so callers (API layer, sync job results) can act on it without
parsing messages.

Exception Hierarchy:
    ReconciliationError (base)
    ├── SourceError
    │   └── SourceUnavailableError
    │       ├── RateLimitError
    │       └── AuthenticationError
    ├── LinkError
    │   └── DuplicateLinkError
    ├── WorkflowError
    │   ├── InvalidTransitionError
    │   └── PublishValidationError
    ├── MergeError
    │   └── MergeConflictError
    ├── RecordNotFoundError
    ├── UnknownFieldError
    ├── DatabaseError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any, List
from datetime import datetime


class ReconciliationError(Exception):
    """
    Base exception for all reconciliation errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (source, record ids, states...)
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
        self.timestamp = datetime.utcnow()

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
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ReconciliationError):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
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


class NonRetryableError(ReconciliationError):
    """Mixin for permanent errors (bad credentials, illegal operations)."""
    pass


# ============================================================================
# Source Errors
# ============================================================================

class SourceError(ReconciliationError):
    """Base exception for source connector failures."""
    pass


class SourceUnavailableError(SourceError):
    """
    Raised when an external source cannot deliver records.

    Recorded per (city, source) pair; the sync job continues.

    Context should include:
        - source: Source tag
        - city: City being scraped
        - status_code: HTTP status code (if applicable)
        - retry_count: Number of retries attempted
    """

    @property
    def source(self) -> Optional[str]:
        return self.context.get("source")

    @property
    def city(self) -> Optional[str]:
        return self.context.get("city")


class RateLimitError(RetryableError, SourceUnavailableError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class AuthenticationError(NonRetryableError, SourceUnavailableError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


# ============================================================================
# Link Errors
# ============================================================================

class LinkError(ReconciliationError):
    """Base exception for raw-to-canonical link failures."""
    pass


class DuplicateLinkError(NonRetryableError, LinkError):
    """
    Raised when a raw record already has a link.

    Callers should treat this as a no-op rather than retry.

    Context should include:
        - raw_record_id: The raw record that is already linked
        - canonical_id: The canonical record it is linked to (if known)
    """
    pass


# ============================================================================
# Workflow Errors
# ============================================================================

class WorkflowError(ReconciliationError):
    """Base exception for publish workflow failures."""
    pass


class InvalidTransitionError(NonRetryableError, WorkflowError):
    """Raised when a state edge is not in the transition table."""

    def __init__(
        self,
        from_state: str,
        to_state: str,
        context: Optional[Dict[str, Any]] = None
    ):
        context = dict(context or {})
        context.update({"from_state": from_state, "to_state": to_state})
        super().__init__(
            f"Transition from {from_state} to {to_state} is not allowed",
            context=context
        )
        self.from_state = from_state
        self.to_state = to_state


class PublishValidationError(NonRetryableError, WorkflowError):
    """
    Raised when an event is not fit to enter a publish state.

    Attributes:
        fields: Mapping of field name to the reason it failed
    """

    def __init__(
        self,
        fields: Dict[str, str],
        context: Optional[Dict[str, Any]] = None
    ):
        context = dict(context or {})
        context["fields"] = fields
        super().__init__(
            f"Event failed publish validation: {', '.join(sorted(fields))}",
            context=context
        )
        self.fields = fields

    @property
    def field_names(self) -> List[str]:
        return sorted(self.fields)


# ============================================================================
# Merge Errors
# ============================================================================

class MergeError(ReconciliationError):
    """Base exception for deduplication merge failures."""
    pass


class MergeConflictError(MergeError):
    """
    Raised when merging two canonical records fails mid-transaction.

    The transaction is rolled back and the pair is skipped.

    Context should include:
        - entity_type: Entity type being deduplicated
        - keeper_id: Surviving record id
        - loser_id: Record that would have been deleted
    """
    pass


# ============================================================================
# Lookup / Storage Errors
# ============================================================================

class RecordNotFoundError(NonRetryableError):
    """
    Raised when a referenced record does not exist.

    Context should include:
        - entity_type: Type or table of the record
        - record_id: Identifier that was looked up
    """
    pass


class DatabaseError(ReconciliationError):
    """
    Raised when database operations fail.

    Context should include:
        - operation: Type of database operation (INSERT, UPDATE, UPSERT)
        - table_name: Name of the table
    """
    pass


class UnknownFieldError(NonRetryableError):
    """
    Raised when an operation names a field the entity type does not have.

    Context should include:
        - entity_type: Entity type of the record
        - fields: The unknown field names
    """
    pass
