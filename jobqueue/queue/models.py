"""Job record and queue data types."""

import json
from enum import Enum, IntEnum
from typing import Any, Optional, Union

from pydantic import BaseModel, field_validator

# Fields stored as JSON inside the job hash; everything else is a plain string.
JSON_FIELDS = ("payload", "result")

# Priorities break ties inside one millisecond of scheduling score.
MAX_PRIORITY = 999


class QueueName(str, Enum):
    """Well-known queue names. Any non-empty string is a valid queue name."""
    RESOURCE_PROCESSING = "resource-processing"
    PATTERN_EXTRACTION = "pattern-extraction"
    KNOWLEDGE_UPDATE = "knowledge-update"
    SCRAPING = "scraping"
    INDEXING = "indexing"
    ANALYTICS = "analytics"
    NOTIFICATIONS = "notifications"
    MONITORING = "monitoring"


class Priority(IntEnum):
    """Job priorities. Lower value = more urgent."""
    CRITICAL = 1
    HIGH = 5
    NORMAL = 10
    LOW = 20


class JobStatus(str, Enum):
    """Job status states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


class RetryResult(str, Enum):
    """Outcome of a manual retry request."""
    RETRIED = "retried"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"


def parse_priority(value: Union[Priority, int, str]) -> int:
    """Accept a Priority, an int in 1..MAX_PRIORITY, or a level name such as "high"."""
    if isinstance(value, str) and not value.strip().lstrip("-").isdigit():
        try:
            return int(Priority[value.strip().upper()])
        except KeyError:
            raise ValueError(f"Unknown priority: {value!r}") from None
    if isinstance(value, bool):
        raise ValueError(f"Invalid priority: {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"Priority must be a whole number, got {value!r}")
    priority = int(value)
    if not 1 <= priority <= MAX_PRIORITY:
        raise ValueError(f"Priority must be between 1 and {MAX_PRIORITY}, got {priority}")
    return priority


class Job(BaseModel):
    """A job record."""
    id: str
    queue: str
    payload: Any = None
    status: JobStatus = JobStatus.PENDING
    priority: int = Priority.NORMAL
    attempts: int = 0
    max_attempts: int = 3
    created_at: str
    updated_at: str
    processed_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    error: Optional[str] = None
    result: Any = None

    @field_validator("priority", mode="before")
    @classmethod
    def _coerce_priority(cls, value):
        return parse_priority(value)

    def to_hash(self) -> dict[str, str]:
        """Serialize to flat string fields for a store hash. None fields are omitted."""
        data = self.model_dump(mode="json", exclude_none=True, exclude=set(JSON_FIELDS))
        fields = {key: str(value) for key, value in data.items()}
        for key in JSON_FIELDS:
            value = getattr(self, key)
            if value is not None:
                fields[key] = json.dumps(value, default=str)
        return fields

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> "Job":
        """Rebuild a Job from hash fields written by ``to_hash``."""
        decoded = {
            key: json.loads(value) if key in JSON_FIELDS else value
            for key, value in data.items()
        }
        return cls.model_validate(decoded)


class QueueStats(BaseModel):
    """Counts for one queue."""
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
