"""
Security validation module.

Provides input validation and sanitization for artifact URLs:
    - validate_artifact_url(): scheme, host and file extension checks
    - sanitize_url(): remove tokens from logged URLs
"""

from core.security.url_validation import (
    ALLOWED_SCHEMES,
    DEFAULT_ARTIFACT_EXTENSION,
    sanitize_url,
    strip_query,
    validate_artifact_url,
)

__all__ = [
    "validate_artifact_url",
    "sanitize_url",
    "strip_query",
    "ALLOWED_SCHEMES",
    "DEFAULT_ARTIFACT_EXTENSION",
]
