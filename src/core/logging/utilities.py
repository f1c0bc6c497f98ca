"""
Helpers for structured log calls.

Extra keyword fields end up as attributes on the LogRecord, where
JSONFormatter picks them up.
"""

import asyncio
import functools
import logging
from typing import Any, Callable, Dict, Optional, TypeVar

from core.errors.exceptions import ErrorCategory
from core.logging.setup import get_logger

F = TypeVar("F", bound=Callable[..., Any])

MAX_ERROR_MESSAGE = 500

# Attributes copied from a LoggedClass instance onto its records
INSTANCE_CONTEXT_ATTRS = ("url", "cache_key", "write_mode")


def log_with_context(logger: logging.Logger, level: int, msg: str, **fields: Any) -> None:
    """
    Log ``msg`` with structured fields.

    Example:
        log_with_context(logger, logging.INFO, "Shard fetched",
                         url=url, bytes_loaded=loaded)
    """
    logger.log(level, msg, extra=fields)


def log_exception(
    logger: logging.Logger,
    exc: BaseException,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **fields: Any,
) -> None:
    """
    Log a failure with ``error_category`` and a truncated ``error_message``.

    The category comes from ArtifactError subclasses; other exceptions carry
    none unless the caller passes one.
    """
    category = getattr(exc, "category", None)
    if category is not None and "error_category" not in fields:
        fields["error_category"] = getattr(category, "value", str(category))

    message = str(exc)
    if len(message) > MAX_ERROR_MESSAGE:
        message = message[:MAX_ERROR_MESSAGE] + "..."
    fields["error_message"] = message

    logger.log(level, msg, exc_info=exc if include_traceback else None, extra=fields)


def _instance_context(obj: Any) -> Dict[str, Any]:
    ctx: Dict[str, Any] = {}
    for attr in INSTANCE_CONTEXT_ATTRS:
        value = getattr(obj, attr, None)
        if isinstance(value, (str, int)):
            ctx[attr] = value
    return ctx


def logged_operation(
    level: int = logging.DEBUG,
    log_start: bool = False,
    operation_name: Optional[str] = None,
) -> Callable[[F], F]:
    """
    Decorate a coroutine method with "<Class>.<op> starting/completed/failed" logs.

    A DownloadCancelledError is logged as "cancelled" at ``level``, not as a
    failure. Task cancellation passes through unlogged.
    """

    def decorator(func: F) -> F:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError("logged_operation only decorates coroutine functions")

        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            op_logger = getattr(self, "_logger", None) or get_logger(type(self).__module__)
            label = f"{type(self).__name__}.{operation_name or func.__name__}"
            ctx = _instance_context(self)

            if log_start:
                log_with_context(op_logger, level, f"{label} starting", **ctx)
            try:
                result = await func(self, *args, **kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if getattr(e, "category", None) == ErrorCategory.CANCELLED:
                    log_with_context(op_logger, level, f"{label} cancelled", **ctx)
                else:
                    log_exception(op_logger, e, f"{label} failed", **ctx)
                raise
            log_with_context(op_logger, level, f"{label} completed", **ctx)
            return result

        return wrapper  # type: ignore

    return decorator


class LoggedClass:
    """
    Mixin giving a component ``self._logger`` named after its module.

    ``_log`` and ``_log_exception`` attach the instance's url, cache_key and
    write_mode (whichever exist) to every record. Set ``log_component`` to
    log under a child logger.
    """

    log_component: Optional[str] = None

    def __init__(self, *args, **kwargs):
        logger_name = type(self).__module__
        if self.log_component:
            logger_name = f"{logger_name}.{self.log_component}"
        self._logger = get_logger(logger_name)
        super().__init__(*args, **kwargs)

    def _log(self, level: int, msg: str, **extra: Any) -> None:
        log_with_context(self._logger, level, msg, **{**_instance_context(self), **extra})

    def _log_exception(
        self,
        exc: BaseException,
        msg: str,
        level: int = logging.ERROR,
        include_traceback: bool = True,
        **extra: Any,
    ) -> None:
        log_exception(
            self._logger,
            exc,
            msg,
            level=level,
            include_traceback=include_traceback,
            **{**_instance_context(self), **extra},
        )
