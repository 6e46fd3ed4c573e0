"""Job queue manager over a shared key/sorted-set store.

Features:
- Priority + delay scheduling using sorted sets
- Atomic claims into a shared processing index
- Retry with exponential backoff (optional jitter)
- Dead-letter set per queue with manual retry
- Stall recovery for jobs whose consumer crashed
- Pause/resume, cleaning and health reporting
"""

import json
import logging
import math
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Union, TYPE_CHECKING

from jobqueue.config import Settings, get_settings
from jobqueue.errors import AdmissionError
from jobqueue.stores.base import BackingStore, Guard
from .models import (
    Job,
    JobStatus,
    MAX_PRIORITY,
    Priority,
    QueueStats,
    RetryResult,
    parse_priority,
)

if TYPE_CHECKING:
    from .worker import Consumer, ConsumerConfig

logger = logging.getLogger(__name__)

Processor = Callable[[Job], Union[Any, Awaitable[Any]]]

STALLED_ERROR = "Job stalled"

# Priority is stored in the sub-millisecond part of a score.
PRIORITY_SCALE = 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def _iso(ms: float) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def resolve_queue_name(queue_name: Union[str, Enum]) -> str:
    """Return the plain queue name, rejecting empty values."""
    if isinstance(queue_name, Enum):
        queue_name = queue_name.value
    if not isinstance(queue_name, str) or not queue_name.strip():
        raise ValueError("Queue name must be a non-empty string")
    return queue_name


def _whole_number(name: str, value: Any, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{name} must be a number, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{name} must be a whole number, got {value!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return int(value)


@dataclass
class RetryPolicy:
    """Retry policy configuration."""
    max_attempts: int = 3
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 3_600_000.0  # 1 hour
    exponential_base: float = 2.0
    jitter: bool = False  # Add randomness to prevent thundering herd

    def get_delay(self, attempts: int) -> float:
        """Delay in ms before the retry that follows ``attempts`` attempts."""
        delay = self.base_delay_ms * (self.exponential_base ** attempts)
        if self.jitter:
            # Add 0-50% jitter
            delay *= (1 + random.random() * 0.5)
        return min(delay, self.max_delay_ms)


class QueueKeys:
    """Store key layout for jobs and queues."""

    def __init__(self, prefix: str):
        self.prefix = prefix

    @property
    def sequence(self) -> str:
        return f"{self.prefix}:seq"

    def job(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def queue(self, name: str) -> str:
        return f"{self.prefix}:queue:{name}"

    def processing(self, name: str) -> str:
        return f"{self.queue(name)}:processing"

    def dead_letter(self, name: str) -> str:
        return f"{self.queue(name)}:failed"

    def completed(self, name: str) -> str:
        return f"{self.queue(name)}:completed"

    def completed_count(self, name: str) -> str:
        return f"{self.queue(name)}:completed:count"

    def paused(self, name: str) -> str:
        return f"{self.queue(name)}:paused"


class QueueManager:
    """Admission, state transitions and introspection for all queues in one store."""

    def __init__(
        self,
        store: BackingStore,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Callable[[], float]] = None,
        retry_policies: Optional[dict[str, RetryPolicy]] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.keys = QueueKeys(self.settings.key_prefix)
        self._clock = clock or _now_ms
        self._retry_policies = dict(retry_policies or {})
        self._default_policy = RetryPolicy(
            max_attempts=self.settings.default_max_attempts,
            base_delay_ms=self.settings.retry_base_delay_ms,
            max_delay_ms=self.settings.retry_max_delay_ms,
            jitter=self.settings.retry_jitter,
        )
        self._processors: dict[str, Processor] = {}
        self._consumers: dict[str, "Consumer"] = {}

    def now(self) -> float:
        """Current time in epoch milliseconds."""
        return self._clock()

    def retry_policy(self, queue_name: str) -> RetryPolicy:
        return self._retry_policies.get(queue_name, self._default_policy)

    def compute_score(self, eligible_at_ms: float, priority: int) -> float:
        """Scheduling score: lower is claimed first.

        The integer part is the first whole millisecond the job may run in.
        The priority fills the fraction (``priority / 1000``), so it only
        orders jobs eligible in the same millisecond: critical < high <
        normal < low. It never delays a job.
        """
        return math.ceil(eligible_at_ms) + priority / PRIORITY_SCALE

    def claim_ceiling(self, now_ms: float) -> float:
        """Highest score that is ready at ``now_ms`` (any priority in this millisecond)."""
        return math.floor(now_ms) + MAX_PRIORITY / PRIORITY_SCALE

    # ==================== Admission ====================

    async def enqueue(
        self,
        queue_name: Union[str, Enum],
        payload: Any = None,
        *,
        priority: Union[Priority, int, str] = Priority.NORMAL,
        delay_ms: int = 0,
        max_attempts: Optional[int] = None,
    ) -> Job:
        """
        Add a job to a queue.

        Args:
            queue_name: Queue to publish into
            payload: JSON-serializable job data
            priority: Lower value = claimed first among jobs ready at the same time
            delay_ms: Delay before the job becomes claimable
            max_attempts: Retry budget (defaults to the queue's retry policy)

        Returns:
            The stored Job

        Raises:
            AdmissionError: If the input is invalid (nothing is written)
            StoreUnavailableError: If the store cannot be reached
        """
        try:
            queue_name = resolve_queue_name(queue_name)
            priority = parse_priority(priority)
            delay_ms = _whole_number("delay_ms", delay_ms, minimum=0)
            if max_attempts is None:
                max_attempts = self.retry_policy(queue_name).max_attempts
            max_attempts = _whole_number("max_attempts", max_attempts, minimum=1)
        except (TypeError, ValueError) as e:
            raise AdmissionError(str(e)) from e

        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise AdmissionError(f"Payload is not JSON-serializable: {e}") from e

        seq = await self.store.incr(self.keys.sequence)
        now = self.now()
        job_id = f"job_{int(now)}_{seq:010d}"
        stamp = _iso(now)

        job = Job(
            id=job_id,
            queue=queue_name,
            payload=payload,
            priority=priority,
            max_attempts=max_attempts,
            created_at=stamp,
            updated_at=stamp,
        )

        # Record and index entry are written as one unit.
        score = self.compute_score(now + delay_ms, priority)
        async with self.store.transaction() as tx:
            tx.replace_hash(self.keys.job(job_id), job.to_hash())
            tx.zadd(self.keys.queue(queue_name), job_id, score)

        logger.info(
            f"Enqueued job {job_id} to {queue_name} (priority={priority}, delay={delay_ms}ms)",
            extra={"job_id": job_id, "queue": queue_name, "priority": priority},
        )
        return job

    # ==================== State transitions ====================

    async def claim(self, queue_name: str, count: int) -> list[str]:
        """Atomically move up to ``count`` ready job ids into the processing index."""
        now = self.now()
        return await self.store.pop_ready(
            self.keys.queue(queue_name),
            self.claim_ceiling(now),
            count,
            self.keys.processing(queue_name),
            now,
        )

    async def begin(self, queue_name: str, job_id: str) -> Optional[Job]:
        """Mark a claimed job as processing. Returns None if the record is gone."""
        job = await self.get_job(job_id)
        if job is None:
            await self.store.zrem(self.keys.processing(queue_name), job_id)
            logger.warning(f"Claimed job {job_id} not found in storage", extra={"job_id": job_id, "queue": queue_name})
            return None

        now = self.now()
        job.status = JobStatus.PROCESSING
        job.attempts += 1
        job.processed_at = _iso(now)
        job.updated_at = job.processed_at

        async with self.store.transaction() as tx:
            tx.replace_hash(self.keys.job(job.id), job.to_hash())
        return job

    async def heartbeat(self, job: Job) -> bool:
        """Refresh the claim of a running job. False means the claim was lost."""
        return await self.store.zadd_existing(self.keys.processing(job.queue), job.id, self.now())

    def claim_guard(self, job: Job) -> Guard:
        """Holds while ``job`` is still claimed and still on the attempt that was begun.

        A claim is lost once stall recovery takes the job back; if another
        consumer has since re-claimed it, the attempt number no longer matches.
        """
        return Guard(
            index_key=self.keys.processing(job.queue),
            member=job.id,
            record_key=self.keys.job(job.id),
            expect={"status": JobStatus.PROCESSING.value, "attempts": str(job.attempts)},
        )

    async def complete(self, job: Job, result: Any = None) -> Optional[Job]:
        """
        Mark a job as completed and schedule its record for deletion.

        Returns None, writing nothing, if this caller no longer owns the claim.
        """
        guard = self.claim_guard(job)
        now = self.now()
        job.status = JobStatus.COMPLETED
        job.completed_at = _iso(now)
        job.updated_at = job.completed_at
        job.result = result
        job.error = None

        retention_ms = self.settings.completed_retention_seconds * 1000
        async with self.store.transaction(guard) as tx:
            tx.replace_hash(self.keys.job(job.id), job.to_hash(), ttl_ms=retention_ms)
            tx.zrem(self.keys.processing(job.queue), job.id)
            tx.zadd(self.keys.completed(job.queue), job.id, now)
            tx.incr(self.keys.completed_count(job.queue))

        if not tx.applied:
            self._log_lost_claim(job, "completion")
            return None
        logger.info(
            f"Job {job.id} completed successfully",
            extra={"job_id": job.id, "queue": job.queue, "attempts": job.attempts, "status": job.status.value},
        )
        return job

    async def fail(self, job: Job, error: str) -> Optional[Job]:
        """
        Record a failed attempt.

        If attempts remain, re-queue with exponential backoff.
        Otherwise, move to the queue's dead-letter set.
        Returns None, writing nothing, if this caller no longer owns the claim.
        """
        return await self._record_failure(job, error, self.claim_guard(job))

    async def _record_failure(self, job: Job, error: str, guard: Guard) -> Optional[Job]:
        now = self.now()
        job.error = error
        job.updated_at = _iso(now)
        extra = {"job_id": job.id, "queue": job.queue, "attempts": job.attempts, "error": error}

        if job.attempts < job.max_attempts:
            delay = self.retry_policy(job.queue).get_delay(job.attempts)
            job.status = JobStatus.RETRYING
            score = self.compute_score(now + delay, job.priority)

            async with self.store.transaction(guard) as tx:
                tx.replace_hash(self.keys.job(job.id), job.to_hash())
                tx.zadd(self.keys.queue(job.queue), job.id, score)
                tx.zrem(self.keys.processing(job.queue), job.id)

            if tx.applied:
                logger.warning(
                    f"Job {job.id} failed, retry {job.attempts}/{job.max_attempts} in {delay:.0f}ms: {error}",
                    extra=extra,
                )
        else:
            job.status = JobStatus.FAILED
            job.failed_at = job.updated_at

            async with self.store.transaction(guard) as tx:
                tx.replace_hash(self.keys.job(job.id), job.to_hash())
                tx.zadd(self.keys.dead_letter(job.queue), job.id, now)
                tx.zrem(self.keys.processing(job.queue), job.id)

            if tx.applied:
                logger.error(f"Job {job.id} moved to dead-letter set after {job.attempts} attempts: {error}", extra=extra)

        if not tx.applied:
            self._log_lost_claim(job, "failure")
            return None
        return job

    def _log_lost_claim(self, job: Job, outcome: str) -> None:
        logger.warning(
            f"Dropping {outcome} of job {job.id}: claim was lost (recovered or re-claimed elsewhere)",
            extra={"job_id": job.id, "queue": job.queue, "attempts": job.attempts},
        )

    async def recover_stalled(self, queue_name: str, exclude: Iterable[str] = ()) -> int:
        """
        Feed jobs stuck in processing past the stall timeout back into the retry path.

        Each recovery is a transaction guarded on the claim still being
        stale, so concurrent sweepers never recover the same job twice and a
        job whose heartbeat just landed is left alone.

        Returns:
            Number of jobs recovered
        """
        queue_name = resolve_queue_name(queue_name)
        skip = set(exclude)
        processing_key = self.keys.processing(queue_name)
        cutoff = self.now() - self.settings.stall_timeout_ms

        recovered = 0
        for job_id in await self.store.zrange_by_score(processing_key, cutoff):
            if job_id in skip:
                continue
            job = await self.get_job(job_id)
            if job is None:
                if await self.store.zrem(processing_key, job_id):
                    logger.warning(f"Stalled job {job_id} has no record, dropping claim")
                continue
            guard = Guard(index_key=processing_key, member=job_id, max_score=cutoff)
            if await self._record_failure(job, STALLED_ERROR, guard) is None:
                continue
            logger.warning(f"Job {job_id} stalled in processing, recovered", extra={"job_id": job_id, "queue": queue_name})
            recovered += 1
        return recovered

    # ==================== Introspection ====================

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job record by id."""
        data = await self.store.get_hash(self.keys.job(job_id))
        if not data:
            return None
        return Job.from_hash(data)

    async def get_queue_stats(self, queue_name: Union[str, Enum]) -> QueueStats:
        """Get pending/processing/completed/failed counts for a queue."""
        queue_name = resolve_queue_name(queue_name)
        completed = await self.store.get(self.keys.completed_count(queue_name))
        return QueueStats(
            pending=await self.store.zcard(self.keys.queue(queue_name)),
            processing=await self.store.zcard(self.keys.processing(queue_name)),
            completed=int(completed or 0),
            failed=await self.store.zcard(self.keys.dead_letter(queue_name)),
        )

    async def list_jobs(
        self,
        queue_name: Union[str, Enum],
        status: Optional[Union[JobStatus, str]] = None,
        limit: int = 10,
    ) -> list[Job]:
        """
        List up to ``limit`` jobs of a queue.

        Pending/retrying jobs come back in score order, failed jobs in
        failure-time order, processing and completed jobs in claim and
        completion order.
        """
        queue_name = resolve_queue_name(queue_name)
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        status = JobStatus(status) if status is not None else None

        if status is None or status in (JobStatus.PENDING, JobStatus.RETRYING):
            index_key = self.keys.queue(queue_name)
        elif status == JobStatus.PROCESSING:
            index_key = self.keys.processing(queue_name)
        elif status == JobStatus.FAILED:
            index_key = self.keys.dead_letter(queue_name)
        else:
            index_key = self.keys.completed(queue_name)

        # The queue holds both pending and retrying jobs.
        match = status if status in (JobStatus.PENDING, JobStatus.RETRYING) else None
        page = max(limit, 50)
        start = 0
        jobs: list[Job] = []

        while len(jobs) < limit:
            job_ids = await self.store.zrange(index_key, start, start + page - 1)
            if not job_ids:
                break
            for job_id in job_ids:
                job = await self.get_job(job_id)
                if job is None or (match is not None and job.status != match):
                    continue
                jobs.append(job)
                if len(jobs) >= limit:
                    break
            start += page
        return jobs

    async def retry_job(self, job_id: str) -> RetryResult:
        """Move a dead-lettered job back into its queue with attempts reset."""
        job = await self.get_job(job_id)
        if job is None:
            return RetryResult.NOT_FOUND
        if job.status != JobStatus.FAILED:
            return RetryResult.INVALID_STATE

        now = self.now()
        job.status = JobStatus.PENDING
        job.attempts = 0
        job.error = None
        job.failed_at = None
        job.processed_at = None
        job.completed_at = None
        job.updated_at = _iso(now)

        async with self.store.transaction() as tx:
            tx.replace_hash(self.keys.job(job.id), job.to_hash())
            tx.zrem(self.keys.dead_letter(job.queue), job.id)
            tx.zadd(self.keys.queue(job.queue), job.id, self.compute_score(now, job.priority))

        logger.info(f"Job {job_id} retried from dead-letter set", extra={"job_id": job_id, "queue": job.queue})
        return RetryResult.RETRIED

    async def clear_queue(self, queue_name: Union[str, Enum], include_dead_letter: bool = False) -> None:
        """Delete every queued job (and optionally every dead-lettered job) of a queue."""
        queue_name = resolve_queue_name(queue_name)
        index_keys = [self.keys.queue(queue_name)]
        if include_dead_letter:
            index_keys.append(self.keys.dead_letter(queue_name))

        for index_key in index_keys:
            job_ids = await self.store.zrange(index_key, 0, -1)
            # Only the ids read here; jobs admitted meanwhile keep their entries.
            async with self.store.transaction() as tx:
                for job_id in job_ids:
                    tx.delete(self.keys.job(job_id))
                    tx.zrem(index_key, job_id)
            logger.info(f"Cleared {len(job_ids)} jobs from {index_key}")

    async def clean_queue(
        self,
        queue_name: Union[str, Enum],
        grace_ms: int = 3_600_000,
        status: Union[JobStatus, str] = JobStatus.COMPLETED,
    ) -> int:
        """
        Delete completed or failed jobs older than ``grace_ms``.

        Returns:
            Number of jobs removed
        """
        queue_name = resolve_queue_name(queue_name)
        status = JobStatus(status)
        if status == JobStatus.COMPLETED:
            index_key = self.keys.completed(queue_name)
        elif status == JobStatus.FAILED:
            index_key = self.keys.dead_letter(queue_name)
        else:
            raise ValueError(f"Can only clean completed or failed jobs, got {status.value}")
        if grace_ms < 0:
            raise ValueError(f"grace_ms must be >= 0, got {grace_ms}")

        job_ids = await self.store.zrange_by_score(index_key, self.now() - grace_ms)
        if not job_ids:
            return 0

        async with self.store.transaction() as tx:
            for job_id in job_ids:
                tx.delete(self.keys.job(job_id))
                tx.zrem(index_key, job_id)

        logger.info(f"Cleaned {len(job_ids)} {status.value} jobs from {queue_name}")
        return len(job_ids)

    async def pause_queue(self, queue_name: Union[str, Enum]) -> None:
        """Stop consumers from claiming jobs of a queue. Admission still works."""
        queue_name = resolve_queue_name(queue_name)
        async with self.store.transaction() as tx:
            tx.set(self.keys.paused(queue_name), "1")
        logger.info(f"Queue {queue_name} paused")

    async def resume_queue(self, queue_name: Union[str, Enum]) -> None:
        queue_name = resolve_queue_name(queue_name)
        await self.store.delete(self.keys.paused(queue_name))
        logger.info(f"Queue {queue_name} resumed")

    async def is_paused(self, queue_name: Union[str, Enum]) -> bool:
        queue_name = resolve_queue_name(queue_name)
        return await self.store.get(self.keys.paused(queue_name)) is not None

    async def get_queue_health(self, queue_names: Optional[Iterable[str]] = None) -> dict:
        """Get store reachability plus counts and health flags per queue."""
        names = list(queue_names) if queue_names is not None else list(self.settings.queues)
        store_available = await self.store.ping()
        health: dict[str, Any] = {"store_available": store_available, "queues": {}}
        if not store_available:
            return health

        for name in names:
            stats = await self.get_queue_stats(name)
            paused = await self.is_paused(name)
            health["queues"][name] = {
                **stats.model_dump(),
                "is_paused": paused,
                "is_healthy": stats.failed < self.settings.health_failed_threshold and not paused,
            }
        return health

    # ==================== Consumers ====================

    def register_processor(self, queue_name: Union[str, Enum], processor: Processor) -> None:
        """Register the processor used by ``run_worker`` for a queue."""
        queue_name = resolve_queue_name(queue_name)
        self._processors[queue_name] = processor
        logger.info(f"Registered processor for queue: {queue_name}")

    @property
    def processors(self) -> dict[str, Processor]:
        return dict(self._processors)

    def get_consumer(self, queue_name: Union[str, Enum]) -> Optional["Consumer"]:
        return self._consumers.get(resolve_queue_name(queue_name))

    async def start_consumer(
        self,
        queue_name: Union[str, Enum],
        processor: Processor,
        config: Optional["ConsumerConfig"] = None,
    ) -> "Consumer":
        """Start a polling consumer for a queue, replacing any running one."""
        # Lazy import to avoid circular imports
        from .worker import Consumer, ConsumerConfig

        queue_name = resolve_queue_name(queue_name)
        await self.stop_consumer(queue_name)

        consumer = Consumer(self, queue_name, processor, config or ConsumerConfig.from_settings(self.settings))
        consumer.start()
        self._consumers[queue_name] = consumer
        return consumer

    async def stop_consumer(self, queue_name: Union[str, Enum], drain: bool = True) -> bool:
        """Stop polling a queue. Returns False if no consumer was running."""
        consumer = self._consumers.pop(resolve_queue_name(queue_name), None)
        if consumer is None:
            return False
        await consumer.stop(drain=drain)
        return True

    async def stop_all(self, drain: bool = True) -> None:
        """Stop every consumer started by this manager."""
        for queue_name in list(self._consumers):
            await self.stop_consumer(queue_name, drain=drain)
