"""Log formatters for JSON and console output."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from core.logging.context import get_log_context
from core.security.url_validation import sanitize_url


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    Strips query strings from URL fields before logging.
    """

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        "url",
        "cache_key",
        "shard",
        "shard_count",
        "bytes_loaded",
        "bytes_total",
        "cached_size",
        "remote_size",
        "etag",
        "http_status",
        "duration_ms",
        "error_category",
        "error_message",
        "parallelism",
        "write_mode",
        "status",
        "entries",
    ]

    # Fields that contain URLs and should be sanitized
    URL_FIELDS = ["url", "artifact_url"]

    def _sanitize_value(self, key: str, value: Any) -> Any:
        if key in self.URL_FIELDS and isinstance(value, str):
            return sanitize_url(value)
        return value

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON with sanitized URLs."""
        log_entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        # Inject context variables
        ctx = get_log_context()
        for key, value in ctx.items():
            if value:
                log_entry[key] = self._sanitize_value(key, value)

        # Add source location for DEBUG/ERROR
        if record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = self._sanitize_value(field, value)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter.

    Includes context when available.
    """

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()

        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            record.levelname,
        ]

        if ctx["operation"]:
            parts.append(f"[{ctx['operation']}]")
        if ctx["shard"]:
            parts.append(f"[shard {ctx['shard']}]")

        prefix = " - ".join(parts)
        message = f"{prefix} - {record.getMessage()}"

        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message
