"""
Custom exceptions for the sync engine with structured error context.

This module provides the exception hierarchy used by the fetchers, the
pipelines and the scheduler. Each exception includes context information
for debugging and for the error details stored on a SyncRun.

Exception Hierarchy:
    SyncException (base)
    ├── FetchError (carries pages/items retrieved so far)
    │   ├── APIFetchError
    │   │   ├── NetworkError (retryable)
    │   │   ├── RateLimitError (retryable)
    │   │   └── AuthenticationError (non-retryable)
    │   └── ResourceNotFoundError (non-retryable)
    ├── TransformationError
    │   └── DataFormatError
    ├── LoadError
    │   ├── DatabaseError
    │   ├── UpsertError
    │   └── ForeignKeySkip
    ├── CheckpointError
    ├── IdentityResolutionError
    ├── TaskAlreadyRunningError
    ├── UnknownPipelineError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class SyncException(Exception):
    """
    Base exception for all sync-related errors.
    
    Attributes:
        message: Human-readable error message
        context: Additional context information (entity type, url, etc.)
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

class RetryableError(SyncException):
    """
    Mixin for errors that should trigger retry logic.
    
    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 5xx)
    """
    
    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        **kwargs
    ):
        super().__init__(message, context, original_exception, **kwargs)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(SyncException):
    """
    Mixin for errors that should NOT trigger retry logic.
    
    Use this for permanent errors like authentication failures,
    unknown resources and malformed payloads.
    """
    pass


# ============================================================================
# Fetch Errors
# ============================================================================

class FetchError(SyncException):
    """
    Base exception for remote collection fetch failures.
    
    pages_retrieved and items_retrieved describe how far the paginated
    sequence got before it was abandoned; everything already yielded was
    handed to the caller and may have been persisted.
    """
    
    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        pages_retrieved: int = 0,
        items_retrieved: int = 0,
        status_code: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, context, original_exception, **kwargs)
        self.pages_retrieved = pages_retrieved
        self.items_retrieved = items_retrieved
        self.status_code = status_code
    
    def with_progress(self, pages_retrieved: int, items_retrieved: int) -> "FetchError":
        """Attach the progress of the enclosing page sequence."""
        self.pages_retrieved = pages_retrieved
        self.items_retrieved = items_retrieved
        self.context["pages_retrieved"] = pages_retrieved
        self.context["items_retrieved"] = items_retrieved
        return self


class APIFetchError(FetchError):
    """
    Exception raised when a remote API request fails.
    
    Context should include:
        - api_url: The endpoint that failed
        - status_code: HTTP status code (if applicable)
        - response_body: Response body (truncated)
        - retry_count: Number of retries attempted
    """
    pass


class NetworkError(RetryableError, APIFetchError):
    """Network-related errors and 5xx responses that should be retried."""
    pass


class RateLimitError(RetryableError, APIFetchError):
    """Rate limiting errors (HTTP 429) that outlasted the backoff budget."""
    
    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None,
        **kwargs
    ):
        super().__init__(message, context, original_exception, **kwargs)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class AuthenticationError(NonRetryableError, APIFetchError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, FetchError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(SyncException):
    """Base exception for payload normalization failures."""
    pass


class DataFormatError(NonRetryableError, TransformationError):
    """Remote payload does not have the expected shape."""
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(SyncException):
    """Base exception for store write failures."""
    pass


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.
    
    Context should include:
        - operation: Type of database operation (SELECT, UPSERT, DELETE)
        - table_name: Name of the table
    """
    pass


class ForeignKeySkip(LoadError):
    """A record references a row that is not present locally yet."""
    pass


# ============================================================================
# Engine Errors
# ============================================================================

class TaskAlreadyRunningError(SyncException):
    """A trigger was issued for an entity type that already has a running run."""
    pass


class UnknownPipelineError(SyncException):
    """No pipeline is registered under the requested name."""
    pass
