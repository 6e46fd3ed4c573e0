"""Shared route dependencies."""

from fastapi import Request

from jobqueue.queue import QueueManager


def get_manager(request: Request) -> QueueManager:
    """Get the queue manager built by the app lifespan (for dependency injection)."""
    return request.app.state.queue_manager
