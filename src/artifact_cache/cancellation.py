"""
Cooperative cancellation shared by fetchers and the download coordinator.

A CancellationToken is handed down from the caller of acquire(). Fetchers
check it before every progress callback and race their network work
against it; run_cancellable() does the racing, cancelling the underlying
asyncio task (which closes the HTTP connection and stops teed writes) and
raising DownloadCancelledError.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

from core.errors.exceptions import DownloadCancelledError

T = TypeVar("T")


class CancellationToken:
    """Cancellation signal for one acquire() call.

    Call cancel() from the event loop thread. Once cancelled, a token stays
    cancelled.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel()
        >>> token.is_cancelled()
        True
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event: Optional[asyncio.Event] = None

    def cancel(self) -> None:
        """Signal that cancellation has been requested."""
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    def is_cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        """
        Raises:
            DownloadCancelledError: If cancellation has been requested
        """
        if self._cancelled:
            raise DownloadCancelledError("Download cancelled by caller")

    async def wait(self) -> None:
        """Block until cancel() is called."""
        if self._event is None:
            self._event = asyncio.Event()
        if self._cancelled:
            self._event.set()
        await self._event.wait()


async def run_cancellable(
    awaitable: Awaitable[T], token: Optional[CancellationToken]
) -> T:
    """
    Await awaitable unless token fires first.

    When the token fires, the work is cancelled and awaited so its cleanup
    (closing connections, releasing write sessions) completes before the
    error is raised.

    Args:
        awaitable: Work to run
        token: Cancellation token, or None to run uncancellable

    Returns:
        The awaitable's result

    Raises:
        DownloadCancelledError: If the token fired before completion
    """
    if token is None:
        return await awaitable

    if token.is_cancelled():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_cancelled()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        waiter.cancel()
        raise

    if not token.is_cancelled():
        waiter.cancel()
        return work.result()

    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    raise DownloadCancelledError("Download cancelled by caller")
