"""
Persistent cache for large model artifacts fetched over HTTP.

Components:
- storage: PersistentCache and its write strategies
- fetch: single-URL fetcher with write-through tee
- shards: shard set resolution
- coordinator: bounded-parallelism shard downloads
- manager: artifact catalog and lifecycle
"""

from artifact_cache.cancellation import CancellationToken
from artifact_cache.config import CacheConfig
from artifact_cache.manager import Artifact, ArtifactManager, ArtifactStatus
from artifact_cache.progress import DownloadProgress
from artifact_cache.shards import resolve_shards

__version__ = "0.1.0"

__all__ = [
    "ArtifactManager",
    "Artifact",
    "ArtifactStatus",
    "CacheConfig",
    "CancellationToken",
    "DownloadProgress",
    "resolve_shards",
]
