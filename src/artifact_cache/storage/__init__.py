"""
Persistent storage for artifact bytes.

Provides the content-addressed PersistentCache, its entry schemas, read
handles and the write strategies it selects between.
"""

from artifact_cache.storage.blob import CachedBlob
from artifact_cache.storage.cache import PersistentCache
from artifact_cache.storage.models import (
    METADATA_PREFIX,
    POLYFILL_ETAG,
    CacheEntry,
    CacheEntryMetadata,
    cache_key_for_url,
)
from artifact_cache.storage.writers import (
    SerializedWriteStrategy,
    StreamWriteStrategy,
    WriteStrategy,
    select_write_strategy,
)

__all__ = [
    "PersistentCache",
    "CachedBlob",
    "CacheEntry",
    "CacheEntryMetadata",
    "cache_key_for_url",
    "METADATA_PREFIX",
    "POLYFILL_ETAG",
    "WriteStrategy",
    "StreamWriteStrategy",
    "SerializedWriteStrategy",
    "select_write_strategy",
]
