"""
Network side of the artifact cache.

Provides the single-URL ArtifactFetcher, the stream tee used for
write-through caching, and aiohttp helpers.
"""

from artifact_cache.fetch.fetcher import ArtifactFetcher, is_cache_valid
from artifact_cache.fetch.http import (
    RemoteMetadata,
    create_session,
    fetch_remote_metadata,
    normalize_etag,
)
from artifact_cache.fetch.tee import StreamTee

__all__ = [
    "ArtifactFetcher",
    "is_cache_valid",
    "RemoteMetadata",
    "create_session",
    "fetch_remote_metadata",
    "normalize_etag",
    "StreamTee",
]
