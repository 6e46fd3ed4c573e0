"""Health check endpoints."""

from fastapi import APIRouter, Depends
from datetime import datetime, timezone
import logging

from jobqueue import __version__
from jobqueue.queue import QueueManager
from .deps import get_manager

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/")
async def health_check():
    """Basic health check - always returns ok if service is running."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "jobqueue",
        "version": __version__,
    }


@router.get("/ready")
async def readiness_check(manager: QueueManager = Depends(get_manager)):
    """
    Readiness check including the backing store and every configured queue.
    """
    try:
        health = await manager.get_queue_health()
    except Exception as e:
        logger.warning(f"Queue health check failed: {e}")
        health = {"store_available": False, "queues": {}, "error": str(e)}

    if not health["store_available"]:
        status = "error"
    elif all(queue["is_healthy"] for queue in health["queues"].values()):
        status = "ok"
    else:
        status = "degraded"

    return {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": health,
    }
