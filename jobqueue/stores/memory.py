"""In-process backing store.

Implements the full ``BackingStore`` contract in Python dictionaries so the
queue can run (and be tested) without Redis. All access is serialized with an
``asyncio.Lock``, which makes claims and transactions atomic with respect to
every coroutine sharing the store. State is not shared across processes.
"""

import asyncio
import time
from typing import Callable, Optional

from .base import BackingStore, Guard, Score


def _now_ms() -> float:
    return time.time() * 1000


class MemoryStore(BackingStore):
    """Dictionary-backed store with sorted sets, hashes, counters and expiry."""

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or _now_ms
        self._strings: dict[str, str] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self._expires_at: dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    # ==================== Internal helpers (lock held) ====================

    def _purge_if_expired(self, key: str) -> None:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._delete_key(key)

    def _delete_key(self, key: str) -> bool:
        existed = False
        for bucket in (self._strings, self._hashes, self._zsets):
            if key in bucket:
                del bucket[key]
                existed = True
        self._expires_at.pop(key, None)
        return existed

    def _set_ttl(self, key: str, ttl_ms: Optional[int]) -> None:
        if ttl_ms is None:
            self._expires_at.pop(key, None)
        else:
            self._expires_at[key] = self._clock() + ttl_ms

    def _sorted(self, key: str) -> list[tuple[str, float]]:
        self._purge_if_expired(key)
        zset = self._zsets.get(key, {})
        # Equal scores order by member, as in Redis.
        return sorted(zset.items(), key=lambda item: (item[1], item[0]))

    def _incr(self, key: str) -> int:
        self._purge_if_expired(key)
        value = int(self._strings.get(key, "0")) + 1
        self._strings[key] = str(value)
        return value

    def _guard_holds(self, guard: Guard) -> bool:
        self._purge_if_expired(guard.index_key)
        score = self._zsets.get(guard.index_key, {}).get(guard.member)
        record: dict[str, str] = {}
        if guard.record_key is not None:
            self._purge_if_expired(guard.record_key)
            record = self._hashes.get(guard.record_key, {})
        return guard.holds(score, [record.get(name) for name in guard.expect])

    def _apply(self, name: str, args: tuple) -> None:
        if name == "replace_hash":
            key, mapping, ttl_ms = args
            self._delete_key(key)
            self._hashes[key] = dict(mapping)
            self._set_ttl(key, ttl_ms)
        elif name == "set":
            key, value, ttl_ms = args
            self._delete_key(key)
            self._strings[key] = value
            self._set_ttl(key, ttl_ms)
        elif name == "zadd":
            key, member, score = args
            self._purge_if_expired(key)
            self._zsets.setdefault(key, {})[member] = score
        elif name == "zrem":
            key, member = args
            zset = self._zsets.get(key)
            if zset is not None:
                zset.pop(member, None)
                if not zset:
                    del self._zsets[key]
        elif name == "incr":
            self._incr(args[0])
        elif name == "delete":
            for key in args:
                self._delete_key(key)
        else:
            raise ValueError(f"Unknown store operation: {name}")

    # ==================== BackingStore ====================

    async def execute(self, ops: list[tuple[str, tuple]], guard: Optional[Guard] = None) -> bool:
        async with self._lock:
            for name, _ in ops:
                if name not in ("replace_hash", "set", "zadd", "zrem", "incr", "delete"):
                    raise ValueError(f"Unknown store operation: {name}")
            if guard is not None and not self._guard_holds(guard):
                return False
            for name, args in ops:
                self._apply(name, args)
            return True

    async def ping(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        self._closed = True

    async def incr(self, key: str) -> int:
        async with self._lock:
            return self._incr(key)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            self._purge_if_expired(key)
            return self._strings.get(key)

    async def get_hash(self, key: str) -> Optional[dict[str, str]]:
        async with self._lock:
            self._purge_if_expired(key)
            data = self._hashes.get(key)
            return dict(data) if data is not None else None

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                self._purge_if_expired(key)
                if self._delete_key(key):
                    removed += 1
            return removed

    async def zcard(self, key: str) -> int:
        async with self._lock:
            self._purge_if_expired(key)
            return len(self._zsets.get(key, {}))

    async def zrange(self, key: str, start: int, end: int) -> list[str]:
        async with self._lock:
            members = [member for member, _ in self._sorted(key)]
        size = len(members)
        if start < 0:
            start = max(size + start, 0)
        if end < 0:
            end = size + end
        if start > end:
            return []
        return members[start:end + 1]

    async def zrange_by_score(
        self,
        key: str,
        max_score: Score,
        min_score: Score = "-inf",
        limit: Optional[int] = None,
    ) -> list[str]:
        low, high = float(min_score), float(max_score)
        async with self._lock:
            members = [m for m, score in self._sorted(key) if low <= score <= high]
        return members[:limit] if limit is not None else members

    async def zscore(self, key: str, member: str) -> Optional[float]:
        async with self._lock:
            self._purge_if_expired(key)
            return self._zsets.get(key, {}).get(member)

    async def zrem(self, key: str, member: str) -> bool:
        async with self._lock:
            self._purge_if_expired(key)
            zset = self._zsets.get(key)
            if not zset or member not in zset:
                return False
            self._apply("zrem", (key, member))
            return True

    async def zadd_existing(self, key: str, member: str, score: float) -> bool:
        async with self._lock:
            self._purge_if_expired(key)
            zset = self._zsets.get(key)
            if not zset or member not in zset:
                return False
            zset[member] = float(score)
            return True

    async def pop_ready(
        self,
        key: str,
        ceiling: float,
        count: int,
        claim_key: str,
        claim_score: float,
    ) -> list[str]:
        if count <= 0:
            return []
        async with self._lock:
            ready = [m for m, score in self._sorted(key) if score <= ceiling][:count]
            for member in ready:
                self._apply("zrem", (key, member))
                self._apply("zadd", (claim_key, member, float(claim_score)))
            return ready
