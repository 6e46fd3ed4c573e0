"""Pytest configuration and shared fixtures."""

import pytest

from jobqueue.config import Settings
from jobqueue.queue import Consumer, ConsumerConfig, QueueManager
from jobqueue.stores import MemoryStore

START_MS = 1_700_000_000_000


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start: float = START_MS):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        store_backend="memory",
        key_prefix="test",
        queues=["q1", "q2"],
        retry_base_delay_ms=1000,
        retry_max_delay_ms=60_000,
        completed_retention_seconds=3600,
        stall_timeout_ms=300_000,
    )


@pytest.fixture
def store(clock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def manager(store, settings, clock) -> QueueManager:
    return QueueManager(store, settings, clock=clock)


@pytest.fixture
def make_consumer(manager):
    """Build a consumer for a queue with test-friendly defaults."""

    def _make(processor, queue_name: str = "q1", **config) -> Consumer:
        config.setdefault("poll_interval_ms", 1)
        return Consumer(manager, queue_name, processor, ConsumerConfig(**config))

    return _make
