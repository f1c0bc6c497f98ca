"""
Fan-out of one byte stream into a primary consumer and a cache writer.

The primary branch is whoever iterates the tee; it pulls chunks from the
source at its own pace. Each chunk is also queued for the cache branch, a
background task feeding a sink coroutine (normally PersistentCache.write).

The cache queue is bounded: a healthy but slower sink back-pressures the
producer once ``buffer_chunks`` chunks are pending. A sink that fails is
detached; its queue is emptied and no further chunks are offered to it, so
the primary branch never stalls or fails because of it.
"""

import asyncio
from typing import AsyncIterator, Awaitable, Callable, Optional

Sink = Callable[[AsyncIterator[bytes]], Awaitable[int]]

_EOF = None


class StreamTee:
    """One producer, two consumers.

    Usage:
        tee = StreamTee(response_chunks, lambda c: cache.write(key, c))
        tee.start()
        try:
            async for chunk in tee:
                consume(chunk)
            written = await tee.finish()
        finally:
            await tee.abort()
    """

    def __init__(
        self,
        source: AsyncIterator[bytes],
        sink: Sink,
        buffer_chunks: int = 64,
    ):
        if buffer_chunks < 1:
            raise ValueError("buffer_chunks must be >= 1")
        self._source = source
        self._sink = sink
        self._queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue(maxsize=buffer_chunks)
        self._task: Optional[asyncio.Task] = None
        self._detached = False
        self._finished = False
        self.error: Optional[BaseException] = None
        self.bytes_written: Optional[int] = None

    @property
    def detached(self) -> bool:
        """True once the cache branch has failed."""
        return self._detached

    def start(self) -> None:
        """Spawn the cache branch. Must be called from a running loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._run_sink())

    async def _queued_chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is _EOF:
                return
            yield chunk

    async def _run_sink(self) -> None:
        try:
            self.bytes_written = await self._sink(self._queued_chunks())
        except Exception as e:
            self.error = e
            self._detach()

    def _detach(self) -> None:
        self._detached = True
        # Unblock a producer waiting on a full queue
        while not self._queue.empty():
            self._queue.get_nowait()

    async def _offer(self, item: Optional[bytes]) -> None:
        if not self._detached:
            await self._queue.put(item)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        if self._task is None:
            self.start()
        async for chunk in self._source:
            await self._offer(chunk)
            yield chunk
        await self._offer(_EOF)

    async def finish(self) -> Optional[int]:
        """
        Wait for the cache branch to persist everything it was given.

        Returns:
            Bytes written by the sink, or None if it was detached
        """
        if self._task is not None:
            await self._task
        self._finished = True
        return None if self._detached else self.bytes_written

    async def abort(self) -> None:
        """Stop the cache branch, leaving whatever it wrote so far. No-op after finish()."""
        if self._finished or self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._finished = True
