"""Library utilities for the job queue."""

from .json_logger import (
    JSONFormatter,
    StructuredLoggerAdapter,
    setup_json_logging,
    setup_logging,
    get_structured_logger,
    job_logger,
)

__all__ = [
    "JSONFormatter",
    "StructuredLoggerAdapter",
    "setup_json_logging",
    "setup_logging",
    "get_structured_logger",
    "job_logger",
]
