"""Metrics endpoint for monitoring and observability."""

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends

from jobqueue.queue import QueueManager
from .deps import get_manager

router = APIRouter(prefix="/metrics", tags=["Metrics"])
logger = logging.getLogger(__name__)

DEAD_LETTER_ALERT_THRESHOLD = 10


@router.get("")
async def get_metrics(manager: QueueManager = Depends(get_manager)):
    """
    Get current metrics for monitoring.

    Returns:
        Per-queue counts, total pending and the dead-letter alert flag
    """
    store_connected = await manager.store.ping()
    queues = {}
    if store_connected:
        for name in manager.settings.queues:
            queues[name] = (await manager.get_queue_stats(name)).model_dump()

    dead_lettered = sum(stats["failed"] for stats in queues.values())
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store_connected": store_connected,
        "queues": queues,
        "total_pending": sum(stats["pending"] for stats in queues.values()),
        "total_processing": sum(stats["processing"] for stats in queues.values()),
        "dead_letter": {
            "count": dead_lettered,
            "alert": dead_lettered > DEAD_LETTER_ALERT_THRESHOLD,
        },
    }
