"""Redis backing store.

Uses ``redis.asyncio``. Multi-key writes run in MULTI/EXEC pipelines. Claims
run as a server-side Lua script, so a read of ready ids and their removal from
the queue happen in one atomic step. Guarded transactions WATCH the keys
they check and retry when another writer gets in first.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from jobqueue.errors import StoreUnavailableError
from .base import BackingStore, Guard, Score

logger = logging.getLogger(__name__)

# KEYS[1]=queue zset, KEYS[2]=processing zset
# ARGV[1]=score ceiling, ARGV[2]=max count, ARGV[3]=claim score
CLAIM_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  redis.call('ZADD', KEYS[2], ARGV[3], id)
end
return ids
"""

# WATCH conflicts tolerated before a guarded transaction gives up
GUARD_RETRIES = 20


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as e:
        raise StoreUnavailableError(f"Redis {operation} failed: {e}") from e


def _queue_ops(pipe, ops: list[tuple[str, tuple]]) -> None:
    for name, args in ops:
        if name == "replace_hash":
            key, mapping, ttl_ms = args
            pipe.delete(key)
            if mapping:
                pipe.hset(key, mapping=mapping)
            if ttl_ms is not None:
                pipe.pexpire(key, ttl_ms)
        elif name == "set":
            key, value, ttl_ms = args
            pipe.set(key, value, px=ttl_ms)
        elif name == "zadd":
            key, member, score = args
            pipe.zadd(key, {member: score})
        elif name == "zrem":
            pipe.zrem(*args)
        elif name == "incr":
            pipe.incr(args[0])
        elif name == "delete":
            pipe.delete(*args)
        else:
            raise ValueError(f"Unknown store operation: {name}")


class RedisStore(BackingStore):
    """Backing store over a Redis server."""

    def __init__(self, client: redis.Redis):
        self._redis = client
        self._claim = self._redis.register_script(CLAIM_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        client = redis.from_url(url, encoding="utf-8", decode_responses=True)
        logger.info(f"Using Redis store at {url.split('@')[-1]}")
        return cls(client)

    async def execute(self, ops: list[tuple[str, tuple]], guard: Optional[Guard] = None) -> bool:
        with _store_errors("transaction"):
            async with self._redis.pipeline(transaction=True) as pipe:
                if guard is None:
                    _queue_ops(pipe, ops)
                    await pipe.execute()
                    return True
                for _ in range(GUARD_RETRIES):
                    try:
                        return await self._execute_guarded(pipe, ops, guard)
                    except WatchError:
                        # Another writer touched a watched key; re-check and retry.
                        continue
        raise StoreUnavailableError(
            f"Transaction guarded on {guard.member} still conflicted after {GUARD_RETRIES} attempts"
        )

    async def _execute_guarded(self, pipe, ops: list[tuple[str, tuple]], guard: Guard) -> bool:
        watched = [guard.index_key]
        if guard.record_key is not None:
            watched.append(guard.record_key)
        await pipe.watch(*watched)

        score = await pipe.zscore(guard.index_key, guard.member)
        fields = []
        if guard.expect:
            fields = await pipe.hmget(guard.record_key, list(guard.expect))
        if not guard.holds(score, fields):
            await pipe.reset()
            return False

        pipe.multi()
        _queue_ops(pipe, ops)
        await pipe.execute()
        return True

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._redis.aclose()
        logger.info("Disconnected from Redis")

    async def incr(self, key: str) -> int:
        with _store_errors("incr"):
            return int(await self._redis.incr(key))

    async def get(self, key: str) -> Optional[str]:
        with _store_errors("get"):
            return await self._redis.get(key)

    async def get_hash(self, key: str) -> Optional[dict[str, str]]:
        with _store_errors("hgetall"):
            data = await self._redis.hgetall(key)
        return data or None

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with _store_errors("delete"):
            return int(await self._redis.delete(*keys))

    async def zcard(self, key: str) -> int:
        with _store_errors("zcard"):
            return int(await self._redis.zcard(key))

    async def zrange(self, key: str, start: int, end: int) -> list[str]:
        with _store_errors("zrange"):
            return list(await self._redis.zrange(key, start, end))

    async def zrange_by_score(
        self,
        key: str,
        max_score: Score,
        min_score: Score = "-inf",
        limit: Optional[int] = None,
    ) -> list[str]:
        with _store_errors("zrangebyscore"):
            if limit is None:
                return list(await self._redis.zrangebyscore(key, min_score, max_score))
            return list(await self._redis.zrangebyscore(key, min_score, max_score, start=0, num=limit))

    async def zscore(self, key: str, member: str) -> Optional[float]:
        with _store_errors("zscore"):
            return await self._redis.zscore(key, member)

    async def zrem(self, key: str, member: str) -> bool:
        with _store_errors("zrem"):
            return bool(await self._redis.zrem(key, member))

    async def zadd_existing(self, key: str, member: str, score: float) -> bool:
        with _store_errors("zadd"):
            # XX + CH: only update existing members and count the change.
            changed = await self._redis.zadd(key, {member: score}, xx=True, ch=True)
            if changed:
                return True
            return await self._redis.zscore(key, member) is not None

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
        with _store_errors("claim"):
            ids = await self._claim(keys=[key, claim_key], args=[ceiling, count, claim_score])
        return [str(job_id) for job_id in ids or []]
