"""Backing stores for the job queue.

- ``RedisStore``: shared store for multi-process deployments
- ``MemoryStore``: in-process store for tests and single-process use
"""

from jobqueue.config import Settings
from .base import BackingStore, Guard, StoreTransaction
from .memory import MemoryStore
from .redis_store import RedisStore


def create_store(settings: Settings) -> BackingStore:
    """Build the store selected by ``settings.store_backend``."""
    backend = settings.store_backend.lower()
    if backend == "redis":
        return RedisStore.from_url(settings.redis_url)
    if backend == "memory":
        return MemoryStore()
    raise ValueError(f"Unknown store backend: {settings.store_backend}")


__all__ = [
    'BackingStore',
    'Guard',
    'StoreTransaction',
    'MemoryStore',
    'RedisStore',
    'create_store',
]
