"""
Log context propagated through contextvars.

Context variables follow asyncio tasks, so a value set before a shard
worker is spawned is visible in every log line that worker emits.
"""

from contextvars import ContextVar
from typing import Dict, Optional

_operation: ContextVar[Optional[str]] = ContextVar("operation", default=None)
_artifact_url: ContextVar[Optional[str]] = ContextVar("artifact_url", default=None)
_shard: ContextVar[Optional[str]] = ContextVar("shard", default=None)


def set_log_context(
    operation: Optional[str] = None,
    artifact_url: Optional[str] = None,
    shard: Optional[str] = None,
) -> None:
    """
    Set log context fields. Only non-None arguments are applied.

    Args:
        operation: Catalog operation (acquire, refresh, remove, clear)
        artifact_url: Canonical URL of the artifact being processed
        shard: Shard label, e.g. "2/3"
    """
    if operation is not None:
        _operation.set(operation)
    if artifact_url is not None:
        _artifact_url.set(artifact_url)
    if shard is not None:
        _shard.set(shard)


def get_log_context() -> Dict[str, Optional[str]]:
    """Return the current log context as a dict."""
    return {
        "operation": _operation.get(),
        "artifact_url": _artifact_url.get(),
        "shard": _shard.get(),
    }


def clear_log_context() -> None:
    """Reset all log context fields."""
    _operation.set(None)
    _artifact_url.set(None)
    _shard.set(None)
