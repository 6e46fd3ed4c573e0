"""Backing store contract shared by producers and consumers.

The store is the only shared state between processes. It provides:
- Hash objects for job records
- Sorted sets for queues, the processing index and dead-letter sets
- Atomic counters and key expiry
- Multi-key transactions
- An atomic "pop ready members" claim primitive
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Union

Score = Union[float, str]


@dataclass
class Guard:
    """Condition a transaction must still satisfy when it is applied.

    ``member`` must be in the sorted set ``index_key`` (with a score no greater
    than ``max_score`` when given), and every field in ``expect`` must hold that
    value in the hash at ``record_key``.
    """
    index_key: str
    member: str
    max_score: Optional[float] = None
    record_key: Optional[str] = None
    expect: dict[str, str] = field(default_factory=dict)

    def holds(self, score: Optional[float], fields: list[Optional[str]]) -> bool:
        """Check the observed member score and ``expect`` field values (in order)."""
        if score is None:
            return False
        if self.max_score is not None and float(score) > self.max_score:
            return False
        return list(fields) == list(self.expect.values())


class StoreTransaction:
    """Buffered write operations applied atomically by ``BackingStore.execute``.

    Operations are recorded as ``(name, args)`` tuples in call order.
    """

    def __init__(self, guard: Optional[Guard] = None):
        self.ops: list[tuple[str, tuple]] = []
        self.guard = guard
        # Set once the block exits: False means the guard failed and nothing was written.
        self.applied = False

    def replace_hash(self, key: str, mapping: dict[str, str], ttl_ms: Optional[int] = None) -> "StoreTransaction":
        """Replace the whole hash at ``key`` (fields not in ``mapping`` are dropped)."""
        self.ops.append(("replace_hash", (key, dict(mapping), ttl_ms)))
        return self

    def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> "StoreTransaction":
        self.ops.append(("set", (key, value, ttl_ms)))
        return self

    def zadd(self, key: str, member: str, score: float) -> "StoreTransaction":
        self.ops.append(("zadd", (key, member, float(score))))
        return self

    def zrem(self, key: str, member: str) -> "StoreTransaction":
        self.ops.append(("zrem", (key, member)))
        return self

    def incr(self, key: str) -> "StoreTransaction":
        self.ops.append(("incr", (key,)))
        return self

    def delete(self, *keys: str) -> "StoreTransaction":
        if keys:
            self.ops.append(("delete", tuple(keys)))
        return self

    def __len__(self) -> int:
        return len(self.ops)


class BackingStore(ABC):
    """Async key/value and sorted-set store used by the queue manager."""

    @asynccontextmanager
    async def transaction(self, guard: Optional[Guard] = None) -> AsyncIterator[StoreTransaction]:
        """Collect writes and apply them as a unit when the block exits cleanly.

        If the block raises, nothing is written. With a ``guard`` the writes are
        applied only if it still holds at commit time; check ``tx.applied``.
        """
        tx = StoreTransaction(guard)
        yield tx
        tx.applied = await self.execute(tx.ops, guard=guard) if tx.ops else True

    @abstractmethod
    async def execute(self, ops: list[tuple[str, tuple]], guard: Optional[Guard] = None) -> bool:
        """Apply transaction operations atomically.

        Returns False, writing nothing, if ``guard`` is given and does not hold.
        """

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the store answers."""

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def incr(self, key: str) -> int:
        ...

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def get_hash(self, key: str) -> Optional[dict[str, str]]:
        """Return all fields of the hash at ``key``, or None if it does not exist."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        ...

    @abstractmethod
    async def zcard(self, key: str) -> int:
        ...

    @abstractmethod
    async def zrange(self, key: str, start: int, end: int) -> list[str]:
        """Members by ascending score rank, ``end`` inclusive (-1 = last)."""

    @abstractmethod
    async def zrange_by_score(
        self,
        key: str,
        max_score: Score,
        min_score: Score = "-inf",
        limit: Optional[int] = None,
    ) -> list[str]:
        """Members with ``min_score <= score <= max_score`` in ascending order."""

    @abstractmethod
    async def zscore(self, key: str, member: str) -> Optional[float]:
        ...

    @abstractmethod
    async def zrem(self, key: str, member: str) -> bool:
        """Remove ``member``. Returns True only if this call removed it."""

    @abstractmethod
    async def zadd_existing(self, key: str, member: str, score: float) -> bool:
        """Update the score of an existing member. Returns False if it is absent."""

    @abstractmethod
    async def pop_ready(
        self,
        key: str,
        ceiling: float,
        count: int,
        claim_key: str,
        claim_score: float,
    ) -> list[str]:
        """Atomically claim up to ``count`` lowest-scored members with score <= ``ceiling``.

        Claimed members are removed from ``key`` and added to ``claim_key`` at
        ``claim_score`` in the same atomic step, so two callers can never
        receive the same member.
        """
