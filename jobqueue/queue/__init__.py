"""Queue module for background job processing.

Features:
- Priority + delay scheduling using sorted sets
- Atomic claims (no two consumers ever run the same job at once)
- Retry with exponential backoff
- Dead-letter set per queue with manual retry
- Stall recovery for crashed consumers
"""

from .models import (
    Job,
    JobStatus,
    Priority,
    QueueName,
    QueueStats,
    RetryResult,
)
from .job_queue import (
    QueueManager,
    QueueKeys,
    RetryPolicy,
    Processor,
    STALLED_ERROR,
)
from .worker import Consumer, ConsumerConfig, run_worker

__all__ = [
    'Job',
    'JobStatus',
    'Priority',
    'QueueName',
    'QueueStats',
    'RetryResult',
    'QueueManager',
    'QueueKeys',
    'RetryPolicy',
    'Processor',
    'STALLED_ERROR',
    'Consumer',
    'ConsumerConfig',
    'run_worker',
]
