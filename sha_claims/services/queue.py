"""
Persistent job queues with retry and back-off.

Jobs are rows in the ``jobs`` table, so they survive restarts and any number
of worker processes can share them.  A worker reserves the oldest due job
with a conditional UPDATE, which guarantees a job is only ever active in one
worker.  Handlers are registered per queue and job name::

    claims_queue = JobQueue("claims")

    @claims_queue.process("submit_single_claim")
    def submit(db, data):
        ...

A handler that raises is retried after ``backoff * 2 ** (attempt - 1)``
seconds until its attempts are used up, then the job is marked failed.

A job still active ``stall_timeout`` seconds after it was reserved belonged
to a worker that died; the next reservation puts it back in the queue and
counts the lost run as an attempt.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session, sessionmaker

from sha_claims.config import settings
from sha_claims.models.database import SessionLocal, session_scope, utcnow
from sha_claims.models.jobs import Job
from sha_claims.models.schemas import JobRead, JobState, QueueName
from sha_claims.services.errors import ClaimsError, InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)

Handler = Callable[[Session, Dict[str, Any]], Optional[Dict[str, Any]]]


@dataclass(frozen=True)
class Retention:
    """How many finished jobs to keep per queue and job name."""
    completed: int = 10
    failed: int = 5


class JobQueue:
    def __init__(
        self,
        name: str,
        retention: Optional[Retention] = None,
        stall_timeout: Optional[float] = None,
    ) -> None:
        self.name = name
        self.retention = retention or Retention()
        self.stall_timeout = stall_timeout
        self.handlers: Dict[str, Handler] = {}

    def process(self, job_name: str) -> Callable[[Handler], Handler]:
        """Register the decorated function as the handler for `job_name`."""
        def decorator(fn: Handler) -> Handler:
            self.handlers[job_name] = fn
            return fn
        return decorator

    def add(
        self,
        db: Session,
        job_name: str,
        data: Optional[Dict[str, Any]] = None,
        attempts: int = 3,
        backoff: float = 60.0,
        delay: float = 0.0,
    ) -> Job:
        """Enqueue a job.  The caller's session is flushed so the job gets an id."""
        now = utcnow()
        job = Job(
            queue=self.name,
            name=job_name,
            payload=json.dumps(data or {}, default=str),
            state=JobState.DELAYED if delay > 0 else JobState.WAITING,
            max_attempts=max(1, attempts),
            backoff_seconds=backoff,
            run_at=now + timedelta(seconds=delay),
        )
        db.add(job)
        db.flush()
        logger.debug("Queued %s/%s as job %s", self.name, job_name, job.id)
        return job

    def _recover_stalled(self, db: Session) -> int:
        """Requeue jobs left active by a dead worker; returns how many were recovered."""
        now = utcnow()
        timeout = settings.job_stall_timeout if self.stall_timeout is None else self.stall_timeout
        cutoff = now - timedelta(seconds=timeout)
        stalled = (
            db.query(Job.id, Job.attempts_made, Job.max_attempts)
            .filter(Job.queue == self.name, Job.state == JobState.ACTIVE, Job.updated_at < cutoff)
            .all()
        )
        recovered = 0
        for job_id, attempts_made, max_attempts in stalled:
            attempts_made += 1
            values: Dict[str, Any] = {
                "attempts_made": attempts_made,
                "last_error": f"Job stalled: still active after {timeout:g} seconds",
                "updated_at": now,
            }
            if attempts_made < max_attempts:
                values.update(state=JobState.WAITING, run_at=now)
            else:
                values.update(state=JobState.FAILED, finished_at=now)
            moved = db.execute(
                update(Job)
                .where(Job.id == job_id, Job.state == JobState.ACTIVE, Job.updated_at < cutoff)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if moved.rowcount == 1:
                recovered += 1
                logger.warning("%s job %s stalled, moved to %s", self.name, job_id, values["state"].value)
        return recovered

    def _reserve(self, db: Session) -> Optional[Job]:
        self._recover_stalled(db)
        now = utcnow()
        candidates = (
            db.query(Job.id)
            .filter(
                Job.queue == self.name,
                or_(Job.state == JobState.WAITING, Job.state == JobState.DELAYED),
                Job.run_at <= now,
            )
            .order_by(Job.run_at, Job.id)
            .limit(5)
            .all()
        )
        for (job_id,) in candidates:
            claimed = db.execute(
                update(Job)
                .where(Job.id == job_id, Job.state.in_([JobState.WAITING, JobState.DELAYED]))
                .values(state=JobState.ACTIVE, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if claimed.rowcount == 1:
                return db.query(Job).filter(Job.id == job_id).first()
        return None

    def run_next(self, factory: Optional[sessionmaker] = None) -> Optional[Job]:
        """Reserve and run one due job.  Returns the job, or None when the queue is idle."""
        factory = factory or SessionLocal
        with session_scope(factory) as db:
            job = self._reserve(db)
            if job is None:
                return None
            job_id, job_name = job.id, job.name
            data = json.loads(job.payload or "{}")

        handler = self.handlers.get(job_name)
        error: Optional[str] = None
        result: Optional[Dict[str, Any]] = None
        retryable = handler is not None
        if handler is None:
            error = f"No handler registered for {self.name}/{job_name}"
        else:
            try:
                with session_scope(factory) as work:
                    result = handler(work, data)
            except ClaimsError as exc:
                # Domain errors will not go away on retry.
                retryable = False
                error = f"{type(exc).__name__}: {exc}"
                logger.error("%s job %s (%s) rejected: %s", self.name, job_id, job_name, error)
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                logger.error("%s job %s (%s) failed: %s", self.name, job_id, job_name, error)

        with session_scope(factory) as db:
            job = db.query(Job).filter(Job.id == job_id).one()
            self._finish(job, result, error, retryable)
            db.flush()
            self._trim(db, job_name)
            db.expunge(job)
        return job

    def _finish(self, job: Job, result: Optional[Dict[str, Any]], error: Optional[str], retryable: bool) -> None:
        now = utcnow()
        job.attempts_made += 1
        job.update_timestamp()
        if error is None:
            job.state = JobState.COMPLETED
            job.result = json.dumps(result, default=str) if result is not None else None
            job.last_error = None
            job.finished_at = now
            return
        job.last_error = error
        if retryable and job.attempts_made < job.max_attempts:
            job.state = JobState.DELAYED
            job.run_at = now + timedelta(seconds=job.backoff_seconds * 2 ** (job.attempts_made - 1))
            logger.info("%s job %s will retry at %s", self.name, job.id, job.run_at)
        else:
            job.state = JobState.FAILED
            job.finished_at = now

    def _trim(self, db: Session, job_name: str) -> None:
        for state, keep in ((JobState.COMPLETED, self.retention.completed), (JobState.FAILED, self.retention.failed)):
            stale = (
                db.query(Job)
                .filter(Job.queue == self.name, Job.name == job_name, Job.state == state)
                .order_by(Job.finished_at.desc(), Job.id.desc())
                .offset(keep)
                .all()
            )
            for job in stale:
                db.delete(job)

    def drain(self, factory: Optional[sessionmaker] = None, limit: int = 100) -> int:
        """Run due jobs until the queue is idle; returns how many ran."""
        ran = 0
        while ran < limit and self.run_next(factory) is not None:
            ran += 1
        return ran

    def counts(self, db: Session) -> Dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        for (state,) in db.query(Job.state).filter(Job.queue == self.name).all():
            counts[state.value] += 1
        return counts


# ---------------------------------------------------------------------------
# Named queues
# ---------------------------------------------------------------------------

claims_queue = JobQueue(QueueName.CLAIMS.value)
inventory_queue = JobQueue(QueueName.INVENTORY.value)
notification_queue = JobQueue(QueueName.NOTIFICATION.value)
backup_queue = JobQueue(QueueName.BACKUP.value, retention=Retention(completed=7, failed=3))

QUEUES: Dict[str, JobQueue] = {
    q.name: q for q in (claims_queue, inventory_queue, notification_queue, backup_queue)
}


def get_queue(name: str) -> JobQueue:
    try:
        return QUEUES[name]
    except KeyError:
        raise NotFoundError(f"Unknown queue {name}") from None


def get_job(db: Session, job_id: int, queue: Optional[str] = None) -> Job:
    query = db.query(Job).filter(Job.id == job_id)
    if queue is not None:
        query = query.filter(Job.queue == queue)
    job = query.first()
    if job is None:
        raise NotFoundError(f"Job {job_id} not found" + (f" in the {queue} queue" if queue else ""))
    return job


def list_jobs(db: Session, queue: Optional[str] = None, state: Optional[JobState] = None, limit: int = 50) -> List[Job]:
    query = db.query(Job)
    if queue is not None:
        query = query.filter(Job.queue == queue)
    if state is not None:
        query = query.filter(Job.state == state)
    return query.order_by(Job.id.desc()).limit(limit).all()


def retry_job(db: Session, job_id: int, queue: Optional[str] = None) -> Job:
    """Send a failed job back to the queue with a fresh set of attempts."""
    job = get_job(db, job_id, queue)
    if job.state != JobState.FAILED:
        raise InvalidStateError(f"Job {job_id} is {job.state.value}, only failed jobs can be retried")
    job.state = JobState.WAITING
    job.attempts_made = 0
    job.run_at = utcnow()
    job.finished_at = None
    job.update_timestamp()
    db.commit()
    db.refresh(job)
    return job


def to_job_read(job: Job) -> JobRead:
    return JobRead(
        id=job.id,
        queue=QueueName(job.queue),
        name=job.name,
        data=json.loads(job.payload or "{}"),
        state=job.state,
        attempts_made=job.attempts_made,
        max_attempts=job.max_attempts,
        run_at=job.run_at,
        result=json.loads(job.result) if job.result else None,
        last_error=job.last_error,
        created_at=job.created_at,
        finished_at=job.finished_at,
    )
