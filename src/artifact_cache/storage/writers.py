"""
Write strategies for the cache storage backend.

Two backends are supported behind one ``write(path, chunks)`` interface:

- StreamWriteStrategy: one asynchronous writable stream per key (aiofiles).
  Concurrent writes to different keys proceed independently.
- SerializedWriteStrategy: a synchronous, single-owner file handle driven from
  one dedicated writer thread. Only one write session is open at a time and
  open/write/close requests are executed strictly in the order received.
  Used on hosts where concurrent handles under one storage root are unsafe.

select_write_strategy() picks one once, when the cache is constructed.
"""

import asyncio
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import AsyncIterable, BinaryIO, Optional, Protocol

import aiofiles

from core.errors.exceptions import ConfigurationError
from core.logging.utilities import log_with_context

logger = logging.getLogger(__name__)


class WriteStrategy(Protocol):
    """Protocol for storage write backends."""

    mode: str

    async def write(self, path: Path, chunks: AsyncIterable[bytes]) -> int:
        """
        Truncate path, then copy chunks into it in order.

        Args:
            path: Target file
            chunks: Byte chunks to persist

        Returns:
            Number of bytes written

        Raises:
            OSError: On storage failure
        """
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


class StreamWriteStrategy:
    """Asynchronous writable stream per key."""

    mode = "stream"

    async def write(self, path: Path, chunks: AsyncIterable[bytes]) -> int:
        written = 0
        async with aiofiles.open(path, "wb") as f:
            async for chunk in chunks:
                await f.write(chunk)
                written += len(chunk)
        return written

    async def close(self) -> None:
        return None


class SerializedWriteStrategy:
    """
    Funnel all writes through one dedicated writer thread.

    The writer thread exclusively owns the single open file handle. Callers
    queue for the write session; once granted, each chunk is handed to the
    writer thread and awaited before the next one is sent, so requests reach
    the handle in the order they were issued.
    """

    mode = "serialized"

    def __init__(self) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="artifact-cache-writer"
        )
        self._handle: Optional[BinaryIO] = None
        self._session_lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    def _get_session_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._session_lock is None or self._lock_loop is not loop:
            self._session_lock = asyncio.Lock()
            self._lock_loop = loop
        return self._session_lock

    # Executed on the writer thread only

    def _open(self, path: Path) -> None:
        if self._handle is not None:
            raise RuntimeError("Writer thread already owns an open handle")
        handle = open(path, "wb")
        handle.truncate(0)
        self._handle = handle

    def _write(self, data: bytes) -> None:
        if self._handle is None:
            raise RuntimeError("No open write session")
        self._handle.write(data)

    def _close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.flush()
            os.fsync(handle.fileno())
            handle.close()

    async def _submit(self, fn, *args) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, fn, *args)

    async def write(self, path: Path, chunks: AsyncIterable[bytes]) -> int:
        written = 0
        async with self._get_session_lock():
            try:
                await self._submit(self._open, path)
                async for chunk in chunks:
                    await self._submit(self._write, chunk)
                    written += len(chunk)
            finally:
                # Shielded so a cancelled producer still releases the handle
                await asyncio.shield(self._submit(self._close))
        return written

    async def close(self) -> None:
        self._executor.shutdown(wait=True)


def detect_write_mode() -> str:
    """
    Pick the write style this host supports.

    Windows refuses a second handle on a file that another context still
    has open, so writes there go through the single serialized writer.
    """
    if sys.platform == "win32":
        return SerializedWriteStrategy.mode
    return StreamWriteStrategy.mode


def select_write_strategy(mode: str = "auto") -> WriteStrategy:
    """
    Build the write strategy for a cache instance.

    Args:
        mode: "auto" (capability detection), "stream" or "serialized"

    Returns:
        WriteStrategy instance

    Raises:
        ConfigurationError: On an unknown mode
    """
    resolved = detect_write_mode() if mode == "auto" else mode

    if resolved == StreamWriteStrategy.mode:
        strategy: WriteStrategy = StreamWriteStrategy()
    elif resolved == SerializedWriteStrategy.mode:
        strategy = SerializedWriteStrategy()
    else:
        raise ConfigurationError(f"Unknown write mode: {mode!r}")

    log_with_context(
        logger,
        logging.DEBUG,
        "Selected cache write strategy",
        write_mode=strategy.mode,
    )
    return strategy
