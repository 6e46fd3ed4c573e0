"""Main entry point for the job queue admin service."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from jobqueue import __version__
from jobqueue.config import Settings, get_settings
from jobqueue.errors import StoreUnavailableError
from jobqueue.lib.json_logger import setup_logging
from jobqueue.queue import QueueManager
from jobqueue.routes import health, metrics, queues
from jobqueue.stores import create_store

logger = logging.getLogger(__name__)


def create_app(manager: Optional[QueueManager] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        manager: Queue manager to serve. If None, one is built from settings
            on startup and its store is closed on shutdown.
        settings: Settings override (defaults to ``get_settings()``)
    """
    settings = settings or (manager.settings if manager else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = manager is None
        queue_manager = manager or QueueManager(create_store(settings), settings)
        app.state.queue_manager = queue_manager
        logger.info("Queue manager ready")
        yield
        # Stop any consumers started through this manager, then release the store
        await queue_manager.stop_all(drain=True)
        if owned:
            await queue_manager.store.close()
        logger.info("Queue manager stopped")

    app = FastAPI(
        title="Job Queue",
        description="Priority job queue with retries, dead-lettering and stall recovery",
        version=__version__,
        lifespan=lifespan,
    )
    if manager is not None:
        app.state.queue_manager = manager

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        logger.warning(f"Store unavailable during {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Backing store unavailable"})

    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(queues.router)
    app.include_router(queues.jobs_router)
    app.include_router(metrics.router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "jobqueue",
            "version": __version__,
            "status": "running",
        }

    return app


if __name__ == "__main__":
    settings = get_settings()
    setup_logging(level=settings.log_level, log_format=settings.log_format)
    uvicorn.run(
        create_app(settings=settings),
        host="0.0.0.0",
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
