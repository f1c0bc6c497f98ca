"""
Error classification and exception hierarchy.

Provides:
- ErrorCategory enum for classifying errors
- ArtifactError hierarchy for typed exceptions
- Classification utilities for error handling
"""

from core.errors.exceptions import (
    # Enums
    ErrorCategory,
    # Base classes
    ArtifactError,
    TransientError,
    PermanentError,
    # Transient errors
    NetworkError,
    ConnectivityError,
    HttpStatusError,
    CacheWriteError,
    # Permanent errors
    ValidationError,
    ConfigurationError,
    IntegrityError,
    ArtifactDeletedError,
    # Cancellation
    DownloadCancelledError,
    # Classification utilities
    classify_http_status,
    classify_exception,
    wrap_exception,
)

__all__ = [
    # Enums
    "ErrorCategory",
    # Base classes
    "ArtifactError",
    "TransientError",
    "PermanentError",
    # Transient errors
    "NetworkError",
    "ConnectivityError",
    "HttpStatusError",
    "CacheWriteError",
    # Permanent errors
    "ValidationError",
    "ConfigurationError",
    "IntegrityError",
    "ArtifactDeletedError",
    # Cancellation
    "DownloadCancelledError",
    # Classification utilities
    "classify_http_status",
    "classify_exception",
    "wrap_exception",
]
