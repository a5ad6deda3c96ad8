"""
Job queue endpoints: inspect, enqueue and retry background jobs.
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, status

from sha_claims.enterprise.audit import log_action
from sha_claims.enterprise.auth import ADMIN, CLAIMS_MANAGER, UserContext, require_role
from sha_claims.models.database import get_db
from sha_claims.models.schemas import JobCreate, JobRead, JobState, QueueName
from sha_claims.services import jobs  # noqa: F401  registers the job handlers
from sha_claims.services import queue as queue_service
from sha_claims.services.errors import InvalidStateError

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=List[JobRead])
def api_list_jobs(
    queue: Optional[QueueName] = None,
    state: Optional[JobState] = None,
    limit: int = Query(50, ge=1, le=500),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    found = queue_service.list_jobs(db, queue.value if queue else None, state, limit)
    return [queue_service.to_job_read(j) for j in found]


@router.get("/counts")
def api_job_counts(db=Depends(get_db), user: UserContext = Depends(require_role(CLAIMS_MANAGER))):
    """Number of jobs in each state, per queue."""
    return {name: q.counts(db) for name, q in queue_service.QUEUES.items()}


@router.post("/{queue}", response_model=JobRead, status_code=status.HTTP_201_CREATED)
def api_enqueue_job(
    job_in: JobCreate,
    queue: QueueName,
    db=Depends(get_db),
    user: UserContext = Depends(require_role(ADMIN)),
):
    job_queue = queue_service.get_queue(queue.value)
    if job_in.name not in job_queue.handlers:
        raise InvalidStateError(f"Queue {queue.value} has no job named {job_in.name}")
    job = job_queue.add(
        db,
        job_in.name,
        job_in.data,
        attempts=job_in.attempts,
        backoff=job_in.backoff_seconds,
        delay=job_in.delay_seconds,
    )
    db.commit()
    db.refresh(job)
    log_action(user.actor, user.role, "enqueue_job", {"queue": queue.value, "name": job_in.name, "job_id": job.id})
    return queue_service.to_job_read(job)


@router.get("/{queue}/{job_id}", response_model=JobRead)
def api_get_job(
    queue: QueueName,
    job_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    return queue_service.to_job_read(queue_service.get_job(db, job_id, queue.value))


@router.post("/{queue}/{job_id}/retry", response_model=JobRead)
def api_retry_job(
    queue: QueueName,
    job_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(ADMIN)),
):
    job = queue_service.retry_job(db, job_id, queue.value)
    log_action(user.actor, user.role, "retry_job", {"queue": queue.value, "job_id": job_id})
    return queue_service.to_job_read(job)
