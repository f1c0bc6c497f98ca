"""
Logging bootstrap for applications embedding the artifact cache.

The library only ever calls get_logger(); handlers are installed by the host
application (or by tests) through setup_logging().
"""

import io
import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from core.logging.context import set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter

DEFAULT_LOG_DIR = Path("logs")
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5
DEFAULT_CONSOLE_LEVEL = logging.INFO
DEFAULT_FILE_LEVEL = logging.DEBUG

PLAIN_FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(filename)s:%(lineno)d] %(message)s"

# HTTP client internals log every connection at DEBUG
NOISY_LOGGERS = ("urllib3", "aiohttp", "asyncio")


def get_log_file_path(
    log_dir: Path,
    name: str = "artifact_cache",
    instance_id: Optional[str] = None,
) -> Path:
    """
    Return ``{log_dir}/{YYYY-MM-DD}/{name}_{YYYYMMDD}[_{instance_id}].log``.

    Processes sharing one cache directory pass distinct instance ids so each
    one rotates its own file.
    """
    now = datetime.now()
    parts = [name, now.strftime("%Y%m%d")]
    if instance_id:
        parts.append(instance_id)
    return log_dir / now.strftime("%Y-%m-%d") / ("_".join(parts) + ".log")


def _console_handler(level: int) -> logging.Handler:
    stream = sys.stdout
    if sys.platform == "win32":
        # cp1252 consoles choke on non-ASCII artifact names
        stream = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(ConsoleFormatter())
    return handler


def _file_handler(
    log_file: Path,
    level: int,
    json_format: bool,
    max_bytes: int,
    backup_count: int,
) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(PLAIN_FILE_FORMAT))
    return handler


def setup_logging(
    name: str = "artifact_cache",
    log_dir: Optional[Path] = None,
    json_format: bool = True,
    console_level: int = DEFAULT_CONSOLE_LEVEL,
    file_level: int = DEFAULT_FILE_LEVEL,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    operation: Optional[str] = None,
    use_instance_id: bool = True,
    file_logging: bool = True,
) -> logging.Logger:
    """
    Install console and rotating-file handlers on the root logger.

    Calling it again replaces the previous handlers instead of stacking
    duplicates.

    Args:
        name: Logger returned to the caller, also the log file prefix
        log_dir: Base directory for date folders (default: ./logs)
        json_format: Write JSON lines to the file instead of plain text
        console_level: Threshold for stdout
        file_level: Threshold for the log file
        max_bytes: Rotation size of one log file
        backup_count: Rotated files kept per day
        suppress_noisy: Raise aiohttp/urllib3/asyncio loggers to WARNING
        operation: Initial ``operation`` context value (e.g. "acquire")
        use_instance_id: Suffix the file name with the process id
        file_logging: Set False to log to the console only

    Returns:
        The logger called ``name``
    """
    if operation:
        set_log_context(operation=operation)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()
    root_logger.addHandler(_console_handler(console_level))

    log_file = None
    if file_logging:
        instance_id = f"p{os.getpid()}" if use_instance_id else None
        log_file = get_log_file_path(log_dir or DEFAULT_LOG_DIR, name=name, instance_id=instance_id)
        root_logger.addHandler(
            _file_handler(log_file, file_level, json_format, max_bytes, backup_count)
        )

    if suppress_noisy:
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    logger.debug("Logging initialized: file=%s, json=%s", log_file, json_format)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger lookup used by every cache component (typically ``__name__``)."""
    return logging.getLogger(name)
