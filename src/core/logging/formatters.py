"""Log formatters for JSON and console output."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from core.utils.json_serializers import json_serializer


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter.

    Produces one JSON object per line for easy parsing with jq/grep.
    Context travels in ``extra=`` (see ProcessingContext.log_extra), so the
    formatter only has to promote whitelisted record attributes.
    """

    # Correlation fields, printed first
    CONTEXT_FIELDS = [
        "correlation_id",
        "upload_id",
        "worker_id",
        "consumer_group",
        "message_id",
    ]

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        # Line processing
        "line_index",
        "line_hash",
        "idempotency_key",
        "outcome",
        "file_hash",
        "file_name",
        "storage_path",
        "file_size",
        "total_lines",
        "start_line",
        "last_line",
        # Progress
        "records_processed",
        "records_failed",
        "records_skipped",
        "retry_count",
        "duration_ms",
        "status",
        "status_code",
        # Errors
        "error_category",
        "error_message",
        "error_type",
        "error",
        # Resilience
        "attempt",
        "max_attempts",
        "total_attempts",
        "delay_seconds",
        "operation",
        # Queue
        "stream",
        "dlq_stream",
        "message_topic",
        "message_partition",
        "message_offset",
        "pending",
        "dead_lettered",
        "pending_message_id",
        # Recovery
        "stale_uploads",
        "requeued",
    ]

    # Numeric fields are coerced so they never serialize as strings
    NUMERIC_FIELDS = {
        "duration_ms": float,
        "delay_seconds": float,
        "line_index": int,
        "total_lines": int,
        "file_size": int,
        "start_line": int,
        "last_line": int,
        "records_processed": int,
        "records_failed": int,
        "records_skipped": int,
        "retry_count": int,
        "status_code": int,
        "attempt": int,
        "max_attempts": int,
        "total_attempts": int,
        "message_partition": int,
        "message_offset": int,
        "pending": int,
        "dead_lettered": int,
        "stale_uploads": int,
        "requeued": int,
    }

    def _ensure_type(self, field: str, value: Any) -> Any:
        """Coerce a numeric field to its declared type, or None if it can't be."""
        if field not in self.NUMERIC_FIELDS or value is None:
            return value

        expected_type = self.NUMERIC_FIELDS[field]
        try:
            return expected_type(value)
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _base_log_entry(record: logging.LogRecord) -> dict[str, Any]:
        return {
            "ts": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

    @staticmethod
    def _should_include_source_location(record: logging.LogRecord) -> bool:
        return record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL)

    def _inject_extra_fields(self, log_entry: dict[str, Any], record: logging.LogRecord) -> None:
        for field in self.CONTEXT_FIELDS + self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = self._ensure_type(field, value)

    def _inject_exception(self, log_entry: dict[str, Any], record: logging.LogRecord) -> None:
        if not record.exc_info:
            return

        exc_type, exc_value, _ = record.exc_info
        log_entry["exception"] = {
            "type": exc_type.__name__ if exc_type else None,
            "message": str(exc_value) if exc_value else None,
            "stacktrace": self.formatException(record.exc_info),
        }

    def format(self, record: logging.LogRecord) -> str:
        log_entry = self._base_log_entry(record)

        if self._should_include_source_location(record):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        self._inject_extra_fields(log_entry, record)
        self._inject_exception(log_entry, record)

        return json.dumps(log_entry, default=json_serializer, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter with color-coded log levels.

    Colors are auto-disabled when output is not a TTY (pipes, files).
    """

    # ANSI color codes
    COLORS = {
        logging.DEBUG: "\033[36m",  # Cyan
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._use_colors = sys.stdout.isatty()

    def _format_level_name(self, record: logging.LogRecord) -> str:
        level_name = record.levelname
        if not self._use_colors:
            return level_name

        color = self.COLORS.get(record.levelno, "")
        if not color:
            return level_name

        return f"{color}{level_name}{self.RESET}"

    @staticmethod
    def _build_tags(record: logging.LogRecord) -> list[str]:
        correlation_id = getattr(record, "correlation_id", None)
        upload_id = getattr(record, "upload_id", None)
        worker_id = getattr(record, "worker_id", None)
        line_index = getattr(record, "line_index", None)

        tags = []
        if worker_id:
            tags.append(f"[{worker_id}]")
        if correlation_id:
            tags.append(f"[{str(correlation_id)[:8]}]")
        if upload_id:
            tags.append(f"[upload:{str(upload_id)[:8]}]")
        if line_index is not None:
            tags.append(f"[line:{line_index}]")
        return tags

    def format(self, record: logging.LogRecord) -> str:
        level_name = self._format_level_name(record)
        prefix = " - ".join(
            [datetime.now().strftime("%Y-%m-%d %H:%M:%S"), level_name, record.name]
        )
        tags = self._build_tags(record)

        if tags:
            line = f"{prefix} - {' '.join(tags)} {record.getMessage()}"
        else:
            line = f"{prefix} - {record.getMessage()}"

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line
