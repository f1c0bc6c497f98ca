"""
Single-URL artifact fetcher with cache validation and write-through.

Flow for one URL:
1. prepare(): HEAD the remote (or fall back to stored metadata when offline
   and unreachable) and decide whether the cached copy is usable.
2. stream() / run(): serve the cached copy, or GET the body and tee it to
   the caller and to PersistentCache at the same time.

Cache-side failures never fail the fetch: they are logged and the cache
branch is detached. Network failures and non-2xx statuses propagate.
"""

import asyncio
import contextlib
import logging
import time
from typing import AsyncIterator, Optional

import aiohttp

from core.errors.exceptions import (
    ArtifactError,
    CacheWriteError,
    ConnectivityError,
    IntegrityError,
    NetworkError,
)
from core.logging.utilities import LoggedClass
from artifact_cache.cancellation import CancellationToken, run_cancellable
from artifact_cache.fetch.http import (
    RemoteMetadata,
    as_network_error,
    fetch_remote_metadata,
    raise_for_status,
)
from artifact_cache.fetch.tee import StreamTee
from artifact_cache.progress import DownloadProgress, ProgressCallback, ProgressThrottle
from artifact_cache.storage.cache import PersistentCache
from artifact_cache.storage.models import CacheEntryMetadata

DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MiB


def is_cache_valid(
    remote: RemoteMetadata,
    cached: Optional[CacheEntryMetadata],
    cached_size: int,
) -> bool:
    """
    Decide whether a cached entry may be served for the given remote state.

    A polyfilled record (legacy entry without an ETag) is trusted as-is; the
    caller is expected to upgrade it with the remote metadata. Otherwise the
    ETags must match and the stored length must equal the remote length.

    Args:
        remote: Current remote metadata (or stored metadata when offline)
        cached: Stored metadata record, None if absent or corrupt
        cached_size: Stored byte length (-1 if absent)

    Returns:
        True if the cached copy is usable
    """
    if cached is None or cached_size < 0:
        return False
    if cached.is_polyfilled:
        return True
    return (
        remote.size >= 0
        and cached.etag == remote.etag
        and remote.size == cached_size
    )


class ArtifactFetcher(LoggedClass):
    """
    Fetches one URL, from cache when valid, otherwise from the network with
    simultaneous cache population.

    A fetcher is single-use: prepare() once, then either stream() or run()
    once.

    Example:
        fetcher = ArtifactFetcher(url, cache, session, progress_callback=print)
        await fetcher.prepare()
        async with contextlib.aclosing(fetcher.stream()) as chunks:
            async for chunk in chunks:
                engine.feed(chunk)
    """

    def __init__(
        self,
        url: str,
        cache: PersistentCache,
        session: aiohttp.ClientSession,
        use_cache: bool = True,
        allow_offline: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
        start_signal: Optional[asyncio.Event] = None,
        cancel_token: Optional[CancellationToken] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout_seconds: float = 30.0,
        progress_interval_seconds: float = 0.1,
        tee_buffer_chunks: int = 64,
    ):
        """
        Args:
            url: URL of the file (one shard or a single-file artifact)
            cache: Cache to validate against and write through to
            session: aiohttp session used for HEAD and GET
            use_cache: Serve a valid cached copy (False always refetches)
            allow_offline: Fall back to stored metadata if the remote is unreachable
            progress_callback: Called with DownloadProgress for this URL
            start_signal: Delivery waits until this event is set
            cancel_token: Cooperative cancellation signal
            chunk_size: Network read size
            timeout_seconds: HEAD timeout, and GET connect/socket-read timeout
            progress_interval_seconds: Minimum spacing of progress callbacks
            tee_buffer_chunks: Chunks queued for the cache writer before back-pressure
        """
        super().__init__()
        self.url = url
        self.cache = cache
        self.cache_key = cache.key_for_url(url)
        self.session = session
        self.use_cache = use_cache
        self.allow_offline = allow_offline
        self.progress_callback = progress_callback
        self.start_signal = start_signal
        self.cancel_token = cancel_token
        self.chunk_size = chunk_size
        self.timeout_seconds = timeout_seconds
        self.tee_buffer_chunks = tee_buffer_chunks
        self._throttle = ProgressThrottle(progress_interval_seconds)

        self.remote: Optional[RemoteMetadata] = None
        self.cached_size = -1
        self.from_cache = False

    @property
    def size(self) -> int:
        """Bytes this fetcher will deliver (-1 if unknown). Valid after prepare()."""
        if self.remote is None:
            raise RuntimeError("prepare() has not been called")
        return self.cached_size if self.from_cache else self.remote.size

    # =========================================================================
    # Validation
    # =========================================================================

    async def prepare(self) -> RemoteMetadata:
        """
        Fetch remote metadata and decide between cache and network.

        Returns:
            Remote metadata (stored metadata when offline fallback applied)

        Raises:
            ConnectivityError: Remote unreachable and no offline fallback
            HttpStatusError: HEAD returned non-2xx
            NetworkError: Other HEAD failure
            DownloadCancelledError: Cancellation requested
        """
        if self.remote is not None:
            return self.remote

        remote = await self._fetch_remote()
        cached = await self.cache.get_metadata(self.cache_key)
        self.cached_size = await self.cache.size(self.cache_key)
        valid = is_cache_valid(remote, cached, self.cached_size)

        if (
            valid
            and cached is not None
            and cached.is_polyfilled
            and not remote.from_cache
            and remote.size >= 0
        ):
            self._log(logging.INFO, "Upgrading legacy metadata record", etag=remote.etag)
            await self._write_metadata(remote.to_cache_metadata())

        self.remote = remote
        self.from_cache = valid and self.use_cache
        self._log(
            logging.DEBUG,
            "Cache validated",
            status="hit" if self.from_cache else "miss",
            cached_size=self.cached_size,
            remote_size=remote.size,
            etag=remote.etag,
        )
        return remote

    async def _fetch_remote(self) -> RemoteMetadata:
        try:
            return await run_cancellable(
                fetch_remote_metadata(self.session, self.url, self.timeout_seconds),
                self.cancel_token,
            )
        except ConnectivityError as e:
            if not self.allow_offline:
                raise
            stored = await self.cache.get_metadata(self.cache_key)
            if stored is None:
                raise
            self._log_exception(
                e,
                "Remote unreachable, using stored metadata",
                level=logging.WARNING,
                include_traceback=False,
            )
            return RemoteMetadata.from_cache_metadata(self.url, stored)

    async def _write_metadata(self, metadata: CacheEntryMetadata) -> bool:
        try:
            await self.cache.write_metadata(self.cache_key, metadata)
        except CacheWriteError as e:
            self._log_exception(e, "Metadata write failed", level=logging.WARNING)
            return False
        return True

    async def _invalidate_entry(self) -> None:
        """
        Record the remote state being fetched before any body byte moves.

        Old content is emptied first so it can never match the new record.
        An interrupted transfer then leaves a short file against a recorded
        size (-1 when the remote sent none), never a record-less blob that
        would be polyfilled.
        """
        try:
            await self.cache.truncate(self.cache_key)
        except CacheWriteError as e:
            # Old record still describes the old bytes
            self._log_exception(e, "Could not discard stale content", level=logging.WARNING)
            return
        await self._write_metadata(self.remote.to_cache_metadata())

    # =========================================================================
    # Delivery
    # =========================================================================

    def _report(self, loaded: int, total: int, force: bool = False) -> None:
        if self.progress_callback is None:
            return
        if self.cancel_token is not None and self.cancel_token.is_cancelled():
            return
        if self._throttle.should_emit(force):
            self.progress_callback(DownloadProgress(loaded=loaded, total=total))

    async def _wait_for_start(self) -> None:
        if self.start_signal is not None:
            await run_cancellable(self.start_signal.wait(), self.cancel_token)

    async def stream(self) -> AsyncIterator[bytes]:
        """
        Deliver the file's bytes.

        Close the iterator (contextlib.aclosing) when abandoning it early,
        so the HTTP response and cache writer are released.

        Yields:
            Byte chunks in file order

        Raises:
            NetworkError: GET failed or the body was truncated
            HttpStatusError: GET returned non-2xx
            IntegrityError: Cached file vanished after validation
            DownloadCancelledError: Cancellation requested
        """
        await self.prepare()
        await self._wait_for_start()

        if not self.from_cache:
            async with contextlib.aclosing(self._network_chunks()) as chunks:
                async for chunk in chunks:
                    yield chunk
            return

        blob = await self.cache.open(self.cache_key)
        if blob is None:
            raise IntegrityError(
                f"Cached file for {self.url} disappeared",
                context={"url": self.url, "cache_key": self.cache_key},
            )
        self._report(blob.size, blob.size, force=True)
        async for chunk in blob.iter_chunks(self.chunk_size):
            if self.cancel_token is not None:
                self.cancel_token.raise_if_cancelled()
            yield chunk

    async def run(self) -> int:
        """
        Fetch to completion without handing bytes to a consumer.

        A valid cached copy is not read at all; only the completion
        progress event is reported.

        Returns:
            Number of bytes delivered

        Raises:
            Same as stream()
        """
        return await run_cancellable(self._drain(), self.cancel_token)

    async def _drain(self) -> int:
        await self.prepare()
        await self._wait_for_start()

        if self.from_cache:
            self._report(self.cached_size, self.cached_size, force=True)
            self._log(logging.DEBUG, "Served from cache", bytes_loaded=self.cached_size)
            return self.cached_size

        loaded = 0
        async with contextlib.aclosing(self._network_chunks()) as chunks:
            async for chunk in chunks:
                loaded += len(chunk)
        return loaded

    async def _network_chunks(self) -> AsyncIterator[bytes]:
        remote = self.remote
        expected = remote.size
        started = time.perf_counter()

        await self._invalidate_entry()

        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.timeout_seconds,
            sock_read=self.timeout_seconds,
        )
        loaded = 0
        tee: Optional[StreamTee] = None
        try:
            async with self.session.get(self.url, timeout=timeout) as response:
                raise_for_status(self.url, response.status)
                tee = StreamTee(
                    response.content.iter_chunked(self.chunk_size),
                    lambda chunks: self.cache.write(self.cache_key, chunks),
                    buffer_chunks=self.tee_buffer_chunks,
                )
                tee.start()
                self._report(0, expected, force=True)
                async for chunk in tee:
                    if self.cancel_token is not None:
                        self.cancel_token.raise_if_cancelled()
                    loaded += len(chunk)
                    self._report(loaded, expected)
                    yield chunk

            if expected >= 0 and loaded != expected:
                raise NetworkError(
                    f"Body of {self.url} ended at {loaded} of {expected} bytes",
                    context={"url": self.url, "bytes_loaded": loaded, "bytes_total": expected},
                )

            await tee.finish()
            if tee.detached:
                self._log_exception(
                    tee.error,
                    "Cache write failed, artifact served without caching",
                    level=logging.WARNING,
                )
            elif expected < 0:
                await self._write_metadata(
                    CacheEntryMetadata(
                        etag=remote.etag, original_size=loaded, original_url=self.url
                    )
                )
        except ArtifactError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise as_network_error(e, self.url) from e
        finally:
            if tee is not None:
                await tee.abort()

        self._report(loaded, expected if expected >= 0 else loaded, force=True)
        self._log(
            logging.INFO,
            "Downloaded",
            bytes_loaded=loaded,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
