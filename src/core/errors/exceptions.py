"""
Exception types and error classification for artifact acquisition.

Provides:
- ErrorCategory enum for retry/report decisions
- Typed exception hierarchy for fetch, cache, and catalog errors
- Error classification utilities
"""

import asyncio
from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures that may succeed on a later attempt
                   (e.g., connection drops, timeouts, 429/503 responses)
        PERMANENT: Failures that won't succeed on retry
                   (e.g., 404, invalid artifact URL, bad configuration)
        CANCELLED: The caller asked for the operation to stop. Not a failure
                   to report.
        UNKNOWN: Unclassified errors
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class ArtifactError(Exception):
    """
    Base exception for all artifact cache errors.

    Attributes:
        message: Human-readable error description
        category: Error classification
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether acquiring again may succeed."""
        return self.category in (ErrorCategory.TRANSIENT, ErrorCategory.UNKNOWN)

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Network Errors (Transient)
# =============================================================================


class TransientError(ArtifactError):
    """Base class for transient errors."""

    category = ErrorCategory.TRANSIENT


class NetworkError(TransientError):
    """HEAD/GET failed: connection refused, DNS, timeout, truncated body."""

    pass


class ConnectivityError(NetworkError):
    """Remote unreachable: connection refused, DNS failure, timeout."""

    pass


class HttpStatusError(NetworkError):
    """Remote answered with a non-success HTTP status."""

    def __init__(
        self,
        message: str,
        status_code: int,
        cause: Optional[BaseException] = None,
        context: Optional[dict] = None,
    ):
        super().__init__(message, cause, context)
        self.status_code = status_code
        self.category = classify_http_status(status_code)


class CacheWriteError(TransientError):
    """Storage backend failed while persisting fetched bytes."""

    pass


# =============================================================================
# Permanent Errors
# =============================================================================


class PermanentError(ArtifactError):
    """Base class for permanent/non-retriable errors."""

    category = ErrorCategory.PERMANENT


class ValidationError(PermanentError):
    """Artifact URL does not match the accepted naming pattern."""

    pass


class ConfigurationError(PermanentError):
    """Invalid configuration."""

    pass


class IntegrityError(PermanentError):
    """Cached files for an artifact are missing or unusable."""

    pass


class ArtifactDeletedError(IntegrityError):
    """Artifact was removed from the cache and must be re-acquired."""

    pass


# =============================================================================
# Cancellation
# =============================================================================


class DownloadCancelledError(ArtifactError):
    """The caller's cancellation token fired mid-operation."""

    category = ErrorCategory.CANCELLED


# =============================================================================
# Error Classification Utilities
# =============================================================================


def classify_http_status(status_code: int) -> ErrorCategory:
    """
    Classify HTTP status code into error category.

    Args:
        status_code: HTTP response status

    Returns:
        Appropriate ErrorCategory
    """
    if 200 <= status_code < 300:
        return ErrorCategory.UNKNOWN  # Not an error

    if status_code in (408, 429):
        return ErrorCategory.TRANSIENT

    if 400 <= status_code < 500:
        return ErrorCategory.PERMANENT

    if status_code >= 500:
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorCategory:
    """
    Classify an exception into error category.

    Args:
        exc: Exception to classify

    Returns:
        Appropriate ErrorCategory
    """
    # Already classified
    if isinstance(exc, ArtifactError):
        return exc.category

    if isinstance(exc, asyncio.CancelledError):
        return ErrorCategory.CANCELLED

    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    connection_markers = (
        "connectionerror",
        "clientconnectorerror",
        "serverdisconnectederror",
        "clientpayloaderror",
        "connection refused",
        "connection reset",
        "no route to host",
        "network unreachable",
        "name resolution",
        "dns",
        "socket",
    )
    if any(m in exc_type or m in exc_str for m in connection_markers):
        return ErrorCategory.TRANSIENT

    if "timeout" in exc_type or "timeout" in exc_str:
        return ErrorCategory.TRANSIENT

    if isinstance(exc, PermissionError):
        return ErrorCategory.PERMANENT

    return ErrorCategory.UNKNOWN


def wrap_exception(
    exc: BaseException,
    default_class: type = ArtifactError,
    context: Optional[dict] = None,
) -> ArtifactError:
    """
    Wrap a generic exception in the appropriate ArtifactError subclass.

    Args:
        exc: Exception to wrap
        default_class: Class to use if it can't be classified
        context: Additional context to include

    Returns:
        Appropriate ArtifactError subclass instance
    """
    if isinstance(exc, ArtifactError):
        if context:
            exc.context.update(context)
        return exc

    category = classify_exception(exc)
    message = str(exc) or type(exc).__name__

    if category == ErrorCategory.CANCELLED:
        return DownloadCancelledError("Operation cancelled", cause=exc, context=context)

    if category == ErrorCategory.TRANSIENT:
        return NetworkError(message, cause=exc, context=context)

    if category == ErrorCategory.PERMANENT:
        return PermanentError(message, cause=exc, context=context)

    return default_class(message, cause=exc, context=context)
