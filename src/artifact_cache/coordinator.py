"""
Bounded-parallelism download of a shard set.

DownloadCoordinator HEADs every shard up front to learn the total size,
then runs ``parallelism`` workers that claim shard indices from a shared
queue and fetch them to completion. A set whose shards are all valid in
the cache is reported once, as complete, without running any worker. Progress from all shards is folded
into one callback: each shard owns one accumulator slot and the aggregate
is their sum, so it never decreases.

The first shard failure (or cancellation) abandons every other in-flight
and queued shard and propagates to the caller.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar

from core.logging.context import set_log_context
from core.logging.utilities import LoggedClass
from artifact_cache.cancellation import CancellationToken, run_cancellable
from artifact_cache.fetch.fetcher import ArtifactFetcher
from artifact_cache.progress import DownloadProgress, ProgressCallback

T = TypeVar("T")

# Builds the fetcher for one shard URL, wired to the given per-shard callback
FetcherFactory = Callable[[str, ProgressCallback], ArtifactFetcher]

DEFAULT_PARALLELISM = 3


async def gather_or_cancel(aws: Iterable[Awaitable[T]]) -> List[T]:
    """
    Run awaitables concurrently; on the first failure cancel the rest.

    Unlike asyncio.gather, siblings of a failed task do not keep running.
    Cancelled siblings are awaited before the failure is raised.

    Returns:
        Results in input order

    Raises:
        The exception of the earliest-listed failed task
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    if not tasks:
        return []
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    for task in tasks:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
    return [task.result() for task in tasks]


class DownloadCoordinator(LoggedClass):
    """
    Drives one ArtifactFetcher per shard with a fixed-size worker pool.

    Example:
        coordinator = DownloadCoordinator(
            urls,
            fetcher_factory=lambda url, cb: ArtifactFetcher(url, cache, session, progress_callback=cb),
            parallelism=3,
            progress_callback=lambda p: print(p.loaded, p.total),
        )
        shard_sizes = await coordinator.run()
    """

    def __init__(
        self,
        urls: List[str],
        fetcher_factory: FetcherFactory,
        parallelism: int = DEFAULT_PARALLELISM,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        """
        Args:
            urls: Shard URLs in shard order
            fetcher_factory: Builds a fetcher for (url, per-shard callback)
            parallelism: Number of concurrent workers (>= 1)
            progress_callback: Receives aggregate DownloadProgress
            cancel_token: Cooperative cancellation signal
        """
        super().__init__()
        if parallelism < 1:
            raise ValueError("parallelism must be >= 1")
        if not urls:
            raise ValueError("urls must not be empty")
        self.urls = list(urls)
        self.url = self.urls[0]
        self.parallelism = parallelism
        self.progress_callback = progress_callback
        self.cancel_token = cancel_token

        self._fetchers = [
            fetcher_factory(url, self._shard_callback(index))
            for index, url in enumerate(self.urls)
        ]
        self._loaded: List[int] = [0] * len(self.urls)
        self._delivered: List[int] = [0] * len(self.urls)
        self.total = -1

    @property
    def loaded(self) -> int:
        return sum(self._loaded)

    def _shard_callback(self, index: int) -> ProgressCallback:
        def on_progress(progress: DownloadProgress) -> None:
            # Only this shard's fetcher writes this slot
            self._loaded[index] = max(self._loaded[index], progress.loaded)
            self._emit()

        return on_progress

    def _emit(self) -> None:
        if self.progress_callback is None:
            return
        if self.cancel_token is not None and self.cancel_token.is_cancelled():
            return
        self.progress_callback(DownloadProgress(loaded=self.loaded, total=self.total))

    async def _worker(self, queue: "asyncio.Queue[int]") -> None:
        shard_count = len(self.urls)
        while True:
            if self.cancel_token is not None:
                self.cancel_token.raise_if_cancelled()
            try:
                index = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            set_log_context(shard=f"{index + 1}/{shard_count}")
            self._delivered[index] = await self._fetchers[index].run()

    async def run(self) -> List[int]:
        """
        Download every shard.

        Returns:
            Bytes delivered per shard, in shard order

        Raises:
            NetworkError / HttpStatusError: A shard's HEAD or GET failed
            DownloadCancelledError: Cancellation requested
        """
        return await run_cancellable(self._run(), self.cancel_token)

    async def _run(self) -> List[int]:
        started = time.perf_counter()

        await gather_or_cancel(fetcher.prepare() for fetcher in self._fetchers)
        sizes = [fetcher.size for fetcher in self._fetchers]
        self.total = sum(sizes) if all(size >= 0 for size in sizes) else -1

        if all(fetcher.from_cache for fetcher in self._fetchers):
            # Nothing to transfer: one completion report for the whole set
            if self.cancel_token is not None:
                self.cancel_token.raise_if_cancelled()
            self._loaded = list(sizes)
            self._delivered = list(sizes)
            self._emit()
            self._log(
                logging.INFO,
                "Shard set served from cache",
                shard_count=len(self.urls),
                bytes_total=self.total,
            )
            return list(self._delivered)

        self._log(
            logging.INFO,
            "Downloading shard set",
            shard_count=len(self.urls),
            bytes_total=self.total,
            parallelism=self.parallelism,
        )

        queue: "asyncio.Queue[int]" = asyncio.Queue()
        for index in range(len(self._fetchers)):
            queue.put_nowait(index)
        await gather_or_cancel(self._worker(queue) for _ in range(self.parallelism))

        # Unknown sizes never produce a loaded == total report on their own
        if self.total < 0:
            self.total = self.loaded
            self._emit()

        self._log(
            logging.INFO,
            "Shard set complete",
            shard_count=len(self.urls),
            bytes_loaded=self.loaded,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return list(self._delivered)
