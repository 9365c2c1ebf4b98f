"""
Operator endpoints for the background job queue.

Provides endpoints for:
- Listing jobs kept in failed status with their error history
- Re-queuing a failed job
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from timeslot.src.db.database import get_db
from timeslot.src.schemas.series import JobResponse
from timeslot.src.services.exceptions import NotFoundError, ValidationError
from timeslot.src.utils.job_queue import JobQueue
from timeslot.src.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/jobs",
    tags=["Jobs"],
)


def get_job_queue(db: Session = Depends(get_db)) -> JobQueue:
    """Create JobQueue instance with database session."""
    return JobQueue(db)


@router.get("/failed", response_model=List[JobResponse])
async def list_failed_jobs(
    queue: Optional[str] = Query(default=None, description="Filter by queue name"),
    limit: int = Query(default=50, ge=1, le=500),
    job_queue: JobQueue = Depends(get_job_queue),
) -> List[JobResponse]:
    """List failed jobs, newest first."""
    return [JobResponse.from_job(job) for job in job_queue.list_failed(queue, limit)]


@router.post("/{job_id}/retry", response_model=JobResponse)
async def retry_job(
    job_id: int,
    job_queue: JobQueue = Depends(get_job_queue),
) -> JobResponse:
    """Re-queue a failed job."""
    try:
        job = job_queue.retry(job_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    logger.info(f"Job {job_id} re-queued by operator", extra={"job_id": job_id})
    return JobResponse.from_job(job)
