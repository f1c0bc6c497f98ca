"""
Content-addressed persistent cache for artifact bytes.

PersistentCache is the only component that touches the storage backend.
Content blobs and their metadata records live side by side in
``<root>/cache/``; keys come from cache_key_for_url().

Usage:
    cache = PersistentCache(Path("/var/lib/models"))
    key = cache.key_for_url(url)
    await cache.truncate(key)
    await cache.write_metadata(key, metadata)
    await cache.write(key, response_chunks)
    blob = await cache.open(key)
"""

import contextlib
import logging
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Callable, Dict, List, Optional

import aiofiles
import aiofiles.os
from pydantic import ValidationError as PydanticValidationError

from core.errors.exceptions import CacheWriteError
from core.logging.utilities import LoggedClass
from artifact_cache.storage.blob import CachedBlob
from artifact_cache.storage.models import (
    METADATA_PREFIX,
    CacheEntry,
    CacheEntryMetadata,
    cache_key_for_url,
)
from artifact_cache.storage.writers import WriteStrategy, select_write_strategy

CACHE_SUBDIR = "cache"


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data


class PersistentCache(LoggedClass):
    """
    Durable key/value byte store with sidecar metadata records.

    The write backend is chosen once at construction (see
    select_write_strategy); every other operation is backend-agnostic.

    Concurrent writes to different keys are independent. Concurrent writes
    to the same key are not supported.
    """

    def __init__(
        self,
        base_dir: Path,
        write_mode: str = "auto",
        strategy: Optional[WriteStrategy] = None,
    ):
        """
        Initialize the cache.

        Args:
            base_dir: Sandboxed storage area; entries live in base_dir/cache
            write_mode: "auto", "stream" or "serialized" (ignored if strategy given)
            strategy: Explicit write strategy (mainly for tests)
        """
        super().__init__()
        self.root = Path(base_dir) / CACHE_SUBDIR
        self._strategy = strategy or select_write_strategy(write_mode)
        self.write_mode = self._strategy.mode

    @staticmethod
    def key_for_url(url: str) -> str:
        """Cache key for a canonical URL."""
        return cache_key_for_url(url)

    def _content_path(self, key: str) -> Path:
        return self.root / key

    def _metadata_path(self, key: str) -> Path:
        return self.root / f"{METADATA_PREFIX}{key}"

    async def _ensure_root(self) -> None:
        await aiofiles.os.makedirs(self.root, exist_ok=True)

    async def write(self, key: str, chunks: AsyncIterable[bytes]) -> int:
        """
        Replace the content stored under key with the given byte stream.

        Existing content is truncated first, so a stream that ends early
        leaves a short file rather than stale bytes.

        Args:
            key: Cache key
            chunks: Byte chunks, persisted in order

        Returns:
            Number of bytes written

        Raises:
            CacheWriteError: On storage backend failure (quota, permission)
        """
        try:
            await self._ensure_root()
            written = await self._strategy.write(self._content_path(key), chunks)
        except OSError as e:
            raise CacheWriteError(
                f"Failed to write cache entry {key}", cause=e, context={"cache_key": key}
            ) from e
        self._log(logging.DEBUG, "Cache entry written", cache_key=key, bytes_loaded=written)
        return written

    async def open(self, key: str) -> Optional[CachedBlob]:
        """
        Open stored content for reading.

        Returns:
            CachedBlob, or None if the entry does not exist
        """
        size = await self.size(key)
        if size < 0:
            return None
        return CachedBlob(key, self._content_path(key), size)

    async def size(self, key: str) -> int:
        """
        Stored byte length of an entry.

        May differ from metadata.original_size if a download was interrupted.

        Returns:
            Number of bytes, or -1 if the entry does not exist
        """
        try:
            stat = await aiofiles.os.stat(self._content_path(key))
        except FileNotFoundError:
            return -1
        return stat.st_size

    async def truncate(self, key: str) -> bool:
        """
        Empty the content stored under key, keeping the entry in place.

        Returns:
            True if there was content to truncate

        Raises:
            CacheWriteError: On storage backend failure
        """
        if await self.size(key) < 0:
            return False
        await self.write(key, _single_chunk(b""))
        return True

    async def write_metadata(self, key: str, metadata: CacheEntryMetadata) -> None:
        """
        Write the metadata record for key.

        Raises:
            CacheWriteError: On storage backend failure
        """
        try:
            await self._ensure_root()
            await self._strategy.write(
                self._metadata_path(key), _single_chunk(metadata.to_json().encode("utf-8"))
            )
        except OSError as e:
            raise CacheWriteError(
                f"Failed to write metadata for {key}", cause=e, context={"cache_key": key}
            ) from e

    async def _read_metadata_file(self, key: str) -> Optional[CacheEntryMetadata]:
        """Parse the metadata record; None if missing or corrupt."""
        try:
            async with aiofiles.open(self._metadata_path(key), "rb") as f:
                raw = await f.read()
        except FileNotFoundError:
            return None
        try:
            return CacheEntryMetadata.model_validate_json(raw)
        except PydanticValidationError:
            self._log(logging.WARNING, "Corrupt metadata record ignored", cache_key=key)
            return None

    async def get_metadata(self, key: str) -> Optional[CacheEntryMetadata]:
        """
        Metadata record for key.

        Entries written before metadata records existed get a polyfilled
        record built from their stored size. A corrupt record is treated as
        absent so the entry gets re-downloaded.

        Returns:
            CacheEntryMetadata, or None if neither content nor record exist
            (or the record is corrupt)
        """
        if await aiofiles.os.path.exists(self._metadata_path(key)):
            return await self._read_metadata_file(key)

        cached_size = await self.size(key)
        if cached_size > 0:
            return CacheEntryMetadata.polyfill(cached_size)
        return None

    async def _names(self) -> List[str]:
        try:
            return sorted(await aiofiles.os.listdir(self.root))
        except FileNotFoundError:
            return []

    async def list(self) -> List[CacheEntry]:
        """
        Enumerate every content entry joined to its metadata record.

        Entries without a (readable) record get a polyfilled one.
        """
        names = await self._names()
        metadata_map: Dict[str, CacheEntryMetadata] = {}
        for name in names:
            if name.startswith(METADATA_PREFIX):
                key = name[len(METADATA_PREFIX):]
                meta = await self._read_metadata_file(key)
                if meta is not None:
                    metadata_map[key] = meta

        entries: List[CacheEntry] = []
        for name in names:
            if name.startswith(METADATA_PREFIX):
                continue
            size = await self.size(name)
            if size < 0:
                # Deleted between listdir and stat
                continue
            entries.append(
                CacheEntry(
                    key=name,
                    size=size,
                    metadata=metadata_map.get(name) or CacheEntryMetadata.polyfill(size),
                )
            )
        return entries

    async def _remove(self, key: str) -> None:
        for path in (self._content_path(key), self._metadata_path(key)):
            with contextlib.suppress(FileNotFoundError):
                await aiofiles.os.remove(path)

    async def delete(self, name_or_url: str) -> None:
        """
        Delete a single entry (content and metadata).

        Args:
            name_or_url: Either a cache key or the URL it was derived from
        """
        url_key = cache_key_for_url(name_or_url)
        await self.delete_many(lambda e: e.key in (name_or_url, url_key))

    async def delete_many(self, predicate: Callable[[CacheEntry], bool]) -> None:
        """
        Delete every entry for which predicate returns True.

        Args:
            predicate: Called with each CacheEntry from list()
        """
        removed = 0
        for entry in await self.list():
            if predicate(entry):
                await self._remove(entry.key)
                removed += 1
        self._log(logging.DEBUG, "Cache entries deleted", entries=removed)

    async def clear(self) -> None:
        """Delete everything in the cache directory, orphan records included."""
        names = await self._names()
        for name in names:
            with contextlib.suppress(FileNotFoundError):
                await aiofiles.os.remove(self.root / name)
        self._log(logging.INFO, "Cache cleared", entries=len(names))

    async def close(self) -> None:
        """Release the write backend."""
        await self._strategy.close()
