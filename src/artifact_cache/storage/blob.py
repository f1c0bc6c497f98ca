"""
Read handles for stored content blobs.

A CachedBlob never holds the content in memory: every read reopens the
file, so a blob can be streamed any number of times, read at arbitrary
offsets, or memory-mapped by the consumer through ``path``.
"""

from pathlib import Path
from typing import AsyncIterator

import aiofiles

DEFAULT_READ_CHUNK = 1024 * 1024  # 1MiB


class CachedBlob:
    """Re-readable, randomly accessible view of one stored cache entry."""

    def __init__(self, key: str, path: Path, size: int):
        self.key = key
        self.path = path
        self.size = size

    def __repr__(self) -> str:
        return f"CachedBlob(key={self.key!r}, size={self.size})"

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.iter_chunks()

    async def iter_chunks(
        self, chunk_size: int = DEFAULT_READ_CHUNK
    ) -> AsyncIterator[bytes]:
        """
        Stream the content from the start.

        Args:
            chunk_size: Maximum bytes per chunk

        Yields:
            Byte chunks in file order

        Raises:
            FileNotFoundError: If the entry was deleted after opening
        """
        async with aiofiles.open(self.path, "rb") as f:
            while True:
                chunk = await f.read(chunk_size)
                if not chunk:
                    return
                yield chunk

    async def read_range(self, start: int, end: int) -> bytes:
        """
        Read bytes [start, end) without loading anything else.

        Args:
            start: First byte offset (inclusive)
            end: Last byte offset (exclusive), clamped to the blob size

        Returns:
            The requested bytes (shorter if the range runs past the end)

        Raises:
            ValueError: If the range is negative or inverted
        """
        if start < 0 or end < start:
            raise ValueError(f"Invalid byte range [{start}, {end})")
        end = min(end, self.size)
        if end <= start:
            return b""
        async with aiofiles.open(self.path, "rb") as f:
            await f.seek(start)
            return await f.read(end - start)

    async def read(self) -> bytes:
        """Read the whole blob. Intended for small artifacts and tests."""
        async with aiofiles.open(self.path, "rb") as f:
            return await f.read()
