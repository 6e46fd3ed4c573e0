"""Structured JSON logging for better observability.

Outputs logs in JSON format for easy parsing by log aggregation tools.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

# Attributes every LogRecord carries; anything else on a record came from ``extra``.
_RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'taskName', 'message', 'asctime',
])


class JSONFormatter(logging.Formatter):
    """Format log records as JSON with structured fields."""

    standard_fields = (
        "job_id", "queue", "attempts", "status",
        "priority", "duration_ms", "error",
    )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in self.standard_fields:
            value = getattr(record, field, None)
            if value is not None:
                log_obj[field] = value

        if record.exc_info:
            log_obj["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        # Any other extra fields
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith('_') or key in self.standard_fields:
                continue
            log_obj[key] = value

        return json.dumps(log_obj, default=str, ensure_ascii=False)


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds structured context to all log messages."""

    def __init__(self, logger: logging.Logger, extra: Optional[dict] = None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        """Add extra context to log record."""
        extra = dict(kwargs.get('extra') or {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs

    def with_context(self, **context) -> 'StructuredLoggerAdapter':
        """Create a new adapter with additional context."""
        return StructuredLoggerAdapter(self.logger, {**self.extra, **context})


def setup_json_logging(level: str = "INFO"):
    """
    Configure root logger for JSON output.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # Set level for common noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def setup_logging(level: str = "INFO", log_format: str = "json"):
    """Configure logging in the configured format ("json" or "text")."""
    if log_format == "json":
        setup_json_logging(level=level)
    else:
        logging.basicConfig(
            level=getattr(logging, level.upper(), logging.INFO),
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        )


def get_structured_logger(name: str, **context) -> StructuredLoggerAdapter:
    """
    Get a structured logger with optional context.

    Args:
        name: Logger name
        **context: Default context fields (job_id, queue, etc.)
    """
    return StructuredLoggerAdapter(logging.getLogger(name), context)


def job_logger(job_id: str, queue: str, **context: Any) -> StructuredLoggerAdapter:
    """Create a logger pre-configured for a specific job."""
    return get_structured_logger(
        f"jobqueue.worker.{queue}",
        job_id=job_id,
        queue=queue,
        **context,
    )
