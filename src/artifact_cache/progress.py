"""Download progress reporting."""

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional


@dataclass(frozen=True)
class DownloadProgress:
    """Byte-level progress snapshot.

    Attributes:
        loaded: Bytes delivered so far
        total: Expected bytes (-1 if the remote did not report a size)
    """

    loaded: int
    total: int

    @property
    def done(self) -> bool:
        return self.total >= 0 and self.loaded == self.total

    @property
    def fraction(self) -> Optional[float]:
        if self.total <= 0:
            return None
        return self.loaded / self.total


ProgressCallback = Callable[[DownloadProgress], Any]


class ProgressThrottle:
    """Rate-limit progress callbacks to one per interval.

    Final reports (force=True) always pass.
    """

    def __init__(self, interval_seconds: float):
        self.interval_seconds = interval_seconds
        self._last_emit: Optional[float] = None

    def should_emit(self, force: bool = False) -> bool:
        now = time.monotonic()
        if (
            force
            or self._last_emit is None
            or now - self._last_emit >= self.interval_seconds
        ):
            self._last_emit = now
            return True
        return False
