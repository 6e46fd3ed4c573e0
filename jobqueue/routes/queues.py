"""Queue and job administration endpoints."""

import logging
from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from jobqueue.errors import AdmissionError
from jobqueue.queue import Job, JobStatus, Priority, QueueManager, QueueStats, RetryResult
from .deps import get_manager

router = APIRouter(prefix="/queues", tags=["Queues"])
jobs_router = APIRouter(prefix="/jobs", tags=["Jobs"])
logger = logging.getLogger(__name__)


class EnqueueRequest(BaseModel):
    """Request body for admitting a job."""
    payload: Any = None
    priority: Union[int, str] = Priority.NORMAL
    delay_ms: int = Field(default=0, ge=0)
    max_attempts: Optional[int] = Field(default=None, ge=1)


@router.post("/{queue_name}/jobs", status_code=201, response_model=Job)
async def enqueue_job(
    queue_name: str,
    request: EnqueueRequest,
    manager: QueueManager = Depends(get_manager),
):
    """Admit a job into a queue."""
    try:
        return await manager.enqueue(
            queue_name,
            request.payload,
            priority=request.priority,
            delay_ms=request.delay_ms,
            max_attempts=request.max_attempts,
        )
    except AdmissionError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{queue_name}/stats", response_model=QueueStats)
async def get_queue_stats(queue_name: str, manager: QueueManager = Depends(get_manager)):
    """Get pending/processing/completed/failed counts."""
    return await manager.get_queue_stats(queue_name)


@router.get("/{queue_name}/jobs", response_model=list[Job])
async def list_jobs(
    queue_name: str,
    status: Optional[JobStatus] = None,
    limit: int = Query(default=10, ge=1, le=1000),
    manager: QueueManager = Depends(get_manager),
):
    """List jobs of a queue, optionally filtered by status."""
    return await manager.list_jobs(queue_name, status=status, limit=limit)


@router.delete("/{queue_name}")
async def clear_queue(
    queue_name: str,
    include_dead_letter: bool = False,
    manager: QueueManager = Depends(get_manager),
):
    """Purge all queued jobs (and optionally dead-lettered jobs)."""
    await manager.clear_queue(queue_name, include_dead_letter=include_dead_letter)
    return {"queue": queue_name, "cleared": True, "include_dead_letter": include_dead_letter}


@router.post("/{queue_name}/pause")
async def pause_queue(queue_name: str, manager: QueueManager = Depends(get_manager)):
    await manager.pause_queue(queue_name)
    return {"queue": queue_name, "paused": True}


@router.post("/{queue_name}/resume")
async def resume_queue(queue_name: str, manager: QueueManager = Depends(get_manager)):
    await manager.resume_queue(queue_name)
    return {"queue": queue_name, "paused": False}


@router.post("/{queue_name}/clean")
async def clean_queue(
    queue_name: str,
    status: JobStatus = JobStatus.COMPLETED,
    grace_ms: int = Query(default=3_600_000, ge=0),
    manager: QueueManager = Depends(get_manager),
):
    """Delete completed or failed jobs older than the grace period."""
    if status not in (JobStatus.COMPLETED, JobStatus.FAILED):
        raise HTTPException(status_code=400, detail="Only completed or failed jobs can be cleaned")
    removed = await manager.clean_queue(queue_name, grace_ms=grace_ms, status=status)
    return {"queue": queue_name, "status": status.value, "removed": removed}


@jobs_router.get("/{job_id}", response_model=Job)
async def get_job(job_id: str, manager: QueueManager = Depends(get_manager)):
    """Get a job record."""
    job = await manager.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@jobs_router.post("/{job_id}/retry")
async def retry_job(job_id: str, manager: QueueManager = Depends(get_manager)):
    """Move a dead-lettered job back into its queue."""
    outcome = await manager.retry_job(job_id)
    if outcome == RetryResult.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Job not found")
    if outcome == RetryResult.INVALID_STATE:
        raise HTTPException(status_code=409, detail="Only failed jobs can be retried")
    return {"job_id": job_id, "status": JobStatus.PENDING.value, "result": outcome.value}
