"""
HTTP helpers for artifact fetching (aiohttp).

Provides session creation with sane pooling/timeouts, remote metadata
lookup (HEAD), and ETag normalization.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Mapping, Optional

import aiohttp

from core.errors.exceptions import (
    ArtifactError,
    ConnectivityError,
    HttpStatusError,
    NetworkError,
    wrap_exception,
)
from artifact_cache.storage.models import CacheEntryMetadata

# Connectivity failures that may fall back to cached metadata when offline
# mode is enabled
CONNECTIVITY_ERRORS = (aiohttp.ClientConnectionError, asyncio.TimeoutError)

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def normalize_etag(raw: Optional[str]) -> str:
    """
    Normalize an ETag header for storage and comparison.

    Quotes, the weak-validator prefix and any other non-alphanumeric
    characters are dropped, so ``W/"abc-1"`` and ``"abc1"`` compare equal.
    """
    if not raw:
        return ""
    return _NON_ALNUM.sub("", raw.removeprefix("W/"))


def parse_content_length(headers: Mapping[str, str]) -> int:
    """Content-Length as int, or -1 when absent or malformed."""
    value = headers.get("Content-Length")
    if value is None:
        return -1
    try:
        length = int(value)
    except ValueError:
        return -1
    return length if length >= 0 else -1


@dataclass(frozen=True)
class RemoteMetadata:
    """Remote state of one URL as reported by a HEAD request.

    Attributes:
        url: Requested URL
        size: Content-Length (-1 if unknown)
        etag: Normalized ETag ("" if absent)
        from_cache: True when built from stored metadata (offline fallback)
    """

    url: str
    size: int
    etag: str
    from_cache: bool = False

    def to_cache_metadata(self) -> CacheEntryMetadata:
        return CacheEntryMetadata(
            etag=self.etag, original_size=self.size, original_url=self.url
        )

    @classmethod
    def from_cache_metadata(
        cls, url: str, metadata: CacheEntryMetadata
    ) -> "RemoteMetadata":
        return cls(
            url=url,
            size=metadata.original_size,
            etag=metadata.etag,
            from_cache=True,
        )


def create_session(
    max_connections: int = 16,
    max_connections_per_host: int = 8,
) -> aiohttp.ClientSession:
    """
    Create an aiohttp session for artifact downloads.

    No total timeout is set on the session: multi-GB bodies take as long
    as they take. Per-request timeouts are applied by the fetcher.

    Args:
        max_connections: Total connection pool size
        max_connections_per_host: Per-host connection limit

    Returns:
        New ClientSession (caller closes it)
    """
    connector = aiohttp.TCPConnector(
        limit=max_connections,
        limit_per_host=max_connections_per_host,
    )
    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=None),
    )


def as_network_error(exc: BaseException, url: str) -> ArtifactError:
    """
    Map an aiohttp/asyncio failure for url into the error hierarchy.

    Connectivity failures become ConnectivityError (the only kind offline
    mode may recover from); everything else goes through wrap_exception
    with NetworkError as the fallback class.
    """
    context = {"url": url}
    if isinstance(exc, CONNECTIVITY_ERRORS):
        return ConnectivityError(f"Cannot reach {url}", cause=exc, context=context)
    return wrap_exception(exc, default_class=NetworkError, context=context)


def raise_for_status(url: str, status: int) -> None:
    """
    Raises:
        HttpStatusError: If status is not 2xx
    """
    if not 200 <= status < 300:
        raise HttpStatusError(
            f"HTTP {status} for {url}",
            status_code=status,
            context={"url": url, "http_status": status},
        )


async def fetch_remote_metadata(
    session: aiohttp.ClientSession, url: str, timeout_seconds: float
) -> RemoteMetadata:
    """
    Issue a HEAD request and read size and ETag.

    Args:
        session: aiohttp session
        url: URL to query (redirects followed)
        timeout_seconds: Total request timeout

    Returns:
        RemoteMetadata

    Raises:
        ConnectivityError: Remote unreachable or request timed out
        HttpStatusError: Non-2xx response
        NetworkError: Any other client-side HTTP failure
    """
    try:
        async with session.head(
            url,
            timeout=aiohttp.ClientTimeout(total=timeout_seconds),
            allow_redirects=True,
        ) as response:
            raise_for_status(url, response.status)
            return RemoteMetadata(
                url=url,
                size=parse_content_length(response.headers),
                etag=normalize_etag(response.headers.get("ETag")),
            )
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise as_network_error(e, url) from e
