"""Background consumers for processing queued jobs.

A ``Consumer`` polls one queue. Each cycle atomically claims up to
``batch_size`` ready jobs and runs the processor for each in its own task,
so processors run concurrently with each other and with the next poll.
"""

import asyncio
import inspect
import logging
import signal
import time
from dataclasses import dataclass
from typing import Any, Optional, Union

from jobqueue.config import Settings
from jobqueue.lib.json_logger import job_logger
from .job_queue import QueueManager, Processor, resolve_queue_name
from .models import Job, JobStatus

logger = logging.getLogger(__name__)


@dataclass
class ConsumerConfig:
    """Polling configuration for one consumer."""
    batch_size: int = 1
    poll_interval_ms: int = 5000
    heartbeat_interval_ms: int = 30_000
    stall_check_interval_ms: int = 60_000

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.poll_interval_ms < 0:
            raise ValueError(f"poll_interval_ms must be >= 0, got {self.poll_interval_ms}")
        if self.heartbeat_interval_ms <= 0:
            raise ValueError(f"heartbeat_interval_ms must be > 0, got {self.heartbeat_interval_ms}")
        if self.stall_check_interval_ms < 0:
            raise ValueError(f"stall_check_interval_ms must be >= 0, got {self.stall_check_interval_ms}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConsumerConfig":
        return cls(
            batch_size=settings.consumer_batch_size,
            poll_interval_ms=settings.consumer_poll_interval_ms,
            heartbeat_interval_ms=settings.consumer_heartbeat_interval_ms,
            stall_check_interval_ms=settings.consumer_stall_check_interval_ms,
        )


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class Consumer:
    """Claim-and-process loop for a single queue."""

    def __init__(
        self,
        manager: QueueManager,
        queue_name: str,
        processor: Processor,
        config: Optional[ConsumerConfig] = None,
    ):
        self.manager = manager
        self.queue_name = resolve_queue_name(queue_name)
        self.processor = processor
        self.config = config or ConsumerConfig.from_settings(manager.settings)
        # Local guard against running the same id twice in this process.
        # Cross-process exclusion comes from the atomic claim.
        self._in_flight: dict[str, asyncio.Task] = {}
        self._running = False
        self._stopping = False
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._last_stall_check: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self._running or (self._task is not None and not self._task.done())

    @property
    def in_flight(self) -> set[str]:
        """Ids of jobs currently being processed by this consumer."""
        return set(self._in_flight)

    # ==================== Poll cycle ====================

    async def poll(self) -> list[asyncio.Task]:
        """
        Run one poll cycle.

        Returns:
            Tasks dispatched for newly claimed jobs
        """
        # Maintenance runs even while the queue is paused.
        await self._maybe_run_maintenance()

        if await self.manager.is_paused(self.queue_name):
            logger.debug(f"Queue {self.queue_name} is paused, not claiming")
            return []

        capacity = self.config.batch_size - len(self._in_flight)
        if capacity <= 0:
            return []

        job_ids = await self.manager.claim(self.queue_name, capacity)
        tasks = []
        for job_id in job_ids:
            if job_id in self._in_flight:
                logger.warning(f"Job {job_id} is already running in this process, skipping")
                continue
            task = asyncio.create_task(self._execute(job_id), name=f"job:{job_id}")
            self._in_flight[job_id] = task
            tasks.append(task)

        if tasks:
            logger.debug(f"Claimed {len(tasks)} jobs from {self.queue_name}")
        return tasks

    async def run_once(self) -> int:
        """Run one poll cycle and wait for the jobs it dispatched. Returns the job count."""
        tasks = await self.poll()
        if tasks:
            await asyncio.gather(*tasks)
        return len(tasks)

    async def _maybe_run_maintenance(self) -> None:
        """Recover stalled jobs and trim the completed index, at most once per interval."""
        now = self.manager.now()
        if (
            self._last_stall_check is not None
            and now - self._last_stall_check < self.config.stall_check_interval_ms
        ):
            return
        self._last_stall_check = now

        recovered = await self.manager.recover_stalled(self.queue_name, exclude=self._in_flight)
        if recovered:
            logger.warning(f"Recovered {recovered} stalled jobs on {self.queue_name}")

        # Completed records expire on their own; this drops their index entries.
        retention_ms = self.manager.settings.completed_retention_seconds * 1000
        await self.manager.clean_queue(self.queue_name, grace_ms=retention_ms, status=JobStatus.COMPLETED)

    # ==================== Job execution ====================

    async def _execute(self, job_id: str) -> None:
        log = job_logger(job_id, self.queue_name)
        heartbeat: Optional[asyncio.Task] = None
        try:
            job = await self.manager.begin(self.queue_name, job_id)
            if job is None:
                return

            heartbeat = asyncio.create_task(self._heartbeat(job))
            started = time.monotonic()
            try:
                result = await self._invoke(job)
            except Exception as e:
                log.warning(
                    f"Job {job_id} attempt {job.attempts} failed: {_error_message(e)}",
                    exc_info=True,
                    extra={"attempts": job.attempts},
                )
                await self.manager.fail(job, _error_message(e))
            else:
                duration_ms = int((time.monotonic() - started) * 1000)
                log.info(f"Job {job_id} processed in {duration_ms}ms", extra={"duration_ms": duration_ms})
                await self.manager.complete(job, result)
        except Exception:
            # The job keeps its processing claim and is picked up by stall recovery.
            log.exception(f"Job {job_id} could not be finalized")
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
            self._in_flight.pop(job_id, None)

    async def _invoke(self, job: Job) -> Any:
        if inspect.iscoroutinefunction(self.processor):
            return await self.processor(job)
        # Sync processors run in a thread so heartbeats keep flowing.
        result = await asyncio.to_thread(self.processor, job)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _heartbeat(self, job: Job) -> None:
        interval = self.config.heartbeat_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.manager.heartbeat(job):
                    logger.warning(f"Lost claim on job {job.id}, its outcome will be dropped")
                    return
            except Exception as e:
                logger.warning(f"Heartbeat for job {job.id} failed: {e}")

    # ==================== Lifecycle ====================

    async def run(self) -> None:
        """Poll until ``stop()`` is called. Errors in a cycle are logged, never raised."""
        self._running = True
        logger.info(f"Starting consumer for {self.queue_name}")

        while not self._stopping:
            try:
                await self.poll()
            except asyncio.CancelledError:
                logger.info(f"Consumer for {self.queue_name} cancelled")
                break
            except Exception as e:
                logger.exception(f"Consumer poll error on {self.queue_name}: {e}")

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.poll_interval_ms / 1000)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                logger.info(f"Consumer for {self.queue_name} cancelled")
                break

        self._running = False
        logger.info(f"Consumer stopped for {self.queue_name}")

    def start(self) -> asyncio.Task:
        """Start polling in a background task."""
        if self._task is not None and not self._task.done():
            return self._task
        self._stopping = False
        self._wakeup.clear()
        self._task = asyncio.create_task(self.run(), name=f"consumer:{self.queue_name}")
        return self._task

    async def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        """
        Stop future polling.

        Running processors are never cancelled. With ``drain`` the call waits
        for them; otherwise they finish in the background, and jobs abandoned
        by a process exit are recovered by stall detection.
        """
        self._stopping = True
        self._wakeup.set()
        if self._task is not None:
            await self._task
            self._task = None
        if drain and self._in_flight:
            logger.info(f"Waiting for {len(self._in_flight)} in-flight jobs on {self.queue_name}")
            await asyncio.wait(list(self._in_flight.values()), timeout=timeout)


async def run_worker(
    manager: QueueManager,
    queues: Optional[list[Union[str, Any]]] = None,
    config: Optional[ConsumerConfig] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Run consumers for registered processors until a shutdown signal.

    Args:
        manager: Queue manager with processors registered
        queues: Queues to consume. Defaults to every queue with a processor.
        config: Consumer configuration (defaults from settings)
        stop_event: Set to stop the worker (SIGTERM/SIGINT also set it)
    """
    processors = manager.processors
    queues = [resolve_queue_name(q) for q in queues] if queues is not None else list(processors)
    missing = [q for q in queues if q not in processors]
    if missing:
        raise ValueError(f"No processor registered for queues: {missing}")

    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()

    def shutdown():
        logger.info("Shutdown signal received")
        stop_event.set()

    handled_signals = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown)
            handled_signals.append(sig)
        except (NotImplementedError, RuntimeError, ValueError):
            # Windows and non-main threads don't support add_signal_handler
            pass

    logger.info(f"Starting worker for queues: {queues}")
    for queue_name in queues:
        await manager.start_consumer(queue_name, processors[queue_name], config)

    try:
        await stop_event.wait()
    except asyncio.CancelledError:
        logger.info("Worker tasks cancelled")
    finally:
        await manager.stop_all(drain=True)
        for sig in handled_signals:
            loop.remove_signal_handler(sig)
        logger.info("Worker stopped")
