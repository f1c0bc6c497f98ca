"""
URL validation for artifact downloads.

Artifacts are accepted by file name: the path of the URL must end with the
configured extension (case-sensitive). Query strings and fragments are
ignored for validation but kept verbatim everywhere else.
"""

import re
from typing import Set, Tuple
from urllib.parse import urlsplit, urlunsplit


# Allowed schemes for artifact downloads
ALLOWED_SCHEMES: Set[str] = {"https", "http"}

# Default accepted artifact extension
DEFAULT_ARTIFACT_EXTENSION = ".gguf"

_QUERY_OR_FRAGMENT = re.compile(r"[?#]")


def strip_query(url: str) -> str:
    """Return url with any query string and fragment removed."""
    return _QUERY_OR_FRAGMENT.split(url, maxsplit=1)[0]


def validate_artifact_url(
    url: str, allowed_extension: str = DEFAULT_ARTIFACT_EXTENSION
) -> Tuple[bool, str]:
    """
    Validate that url names an artifact this cache accepts.

    Checks:
    - URL is non-empty and parseable
    - Scheme is http or https
    - Hostname is present
    - Path (query and fragment ignored) ends with allowed_extension

    Args:
        url: URL to validate
        allowed_extension: Required file extension, including the dot

    Returns:
        (is_valid, error_message)
        - (True, "") if valid
        - (False, "error description") if invalid

    Examples:
        >>> validate_artifact_url("https://host/model.gguf?download=true")
        (True, '')

        >>> validate_artifact_url("https://host/model.gguf.bin")
        (False, 'URL must end with ".gguf": https://host/model.gguf.bin')
    """
    if not url:
        return False, "Empty URL"

    try:
        parsed = urlsplit(url)
    except ValueError as e:
        return False, f"Invalid URL format: {e}"

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        return False, f"Unsupported scheme: {parsed.scheme or '(none)'}"

    if not parsed.hostname:
        return False, "No hostname in URL"

    if not strip_query(url).endswith(allowed_extension):
        return False, f'URL must end with "{allowed_extension}": {url}'

    return True, ""


def sanitize_url(url: str) -> str:
    """
    Remove query string, fragment and credentials from a URL for logging.

    Signed download URLs carry tokens in the query string.

    Args:
        url: URL to sanitize

    Returns:
        URL safe to write to logs
    """
    try:
        parsed = urlsplit(url)
    except ValueError:
        return strip_query(url)
    if not parsed.scheme:
        return strip_query(url)
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    return urlunsplit((parsed.scheme, netloc, parsed.path, "", ""))
