import json
from datetime import timedelta

import pytest

from sha_claims.models.database import utcnow
from sha_claims.models.jobs import Job
from sha_claims.models.schemas import JobState
from sha_claims.services.errors import InvalidStateError, NotFoundError
from sha_claims.services.queue import JobQueue, Retention, get_job, get_queue, list_jobs, retry_job


@pytest.fixture
def queue():
    q = JobQueue("testing", retention=Retention(completed=2, failed=2))
    calls = []

    @q.process("echo")
    def echo(db, data):
        calls.append(data)
        return {"echo": data.get("value")}

    @q.process("explode")
    def explode(db, data):
        raise RuntimeError("boom")

    q.calls = calls
    return q


def _enqueue(db, queue, name, data=None, **kwargs):
    job = queue.add(db, name, data, **kwargs)
    db.commit()
    return job.id


def test_run_next_completes_job_and_stores_result(db, session_factory, queue):
    job_id = _enqueue(db, queue, "echo", {"value": 42})
    job = queue.run_next(session_factory)

    assert job.id == job_id
    assert job.state == JobState.COMPLETED
    assert job.attempts_made == 1
    assert queue.calls == [{"value": 42}]
    assert json.loads(job.result) == {"echo": 42}
    assert queue.run_next(session_factory) is None


def test_jobs_run_oldest_first(db, session_factory, queue):
    first = _enqueue(db, queue, "echo", {"value": 1})
    second = _enqueue(db, queue, "echo", {"value": 2})
    assert queue.run_next(session_factory).id == first
    assert queue.run_next(session_factory).id == second


def test_delayed_job_waits_until_due(db, session_factory, queue):
    job_id = _enqueue(db, queue, "echo", {}, delay=3600)
    assert queue.run_next(session_factory) is None
    job = db.get(Job, job_id)
    assert job.state == JobState.DELAYED

    job.run_at = utcnow() - timedelta(seconds=1)
    db.commit()
    assert queue.run_next(session_factory).state == JobState.COMPLETED


def test_failing_job_backs_off_exponentially_then_fails(db, session_factory, queue):
    job_id = _enqueue(db, queue, "explode", attempts=3, backoff=10)

    job = queue.run_next(session_factory)
    assert job.state == JobState.DELAYED
    assert job.last_error == "RuntimeError: boom"
    first_delay = (job.run_at - job.updated_at).total_seconds()
    assert 9 <= first_delay <= 11

    db.expire_all()
    db.get(Job, job_id).run_at = utcnow()
    db.commit()
    job = queue.run_next(session_factory)
    assert job.state == JobState.DELAYED
    second_delay = (job.run_at - job.updated_at).total_seconds()
    assert 19 <= second_delay <= 21

    db.expire_all()
    db.get(Job, job_id).run_at = utcnow()
    db.commit()
    job = queue.run_next(session_factory)
    assert job.state == JobState.FAILED
    assert job.attempts_made == 3
    assert job.finished_at is not None


def test_job_without_handler_fails_immediately(db, session_factory, queue):
    _enqueue(db, queue, "unknown", attempts=5)
    job = queue.run_next(session_factory)
    assert job.state == JobState.FAILED
    assert "No handler registered" in job.last_error


def test_domain_errors_are_not_retried(db, session_factory, queue):
    @queue.process("missing_claim")
    def missing_claim(db, data):
        raise NotFoundError("Claim 7 not found")

    _enqueue(db, queue, "missing_claim", attempts=5)
    job = queue.run_next(session_factory)
    assert job.state == JobState.FAILED
    assert job.attempts_made == 1


def test_handler_changes_roll_back_on_failure(db, session_factory, queue):
    @queue.process("half_done")
    def half_done(work, data):
        queue.add(work, "echo", {"value": "orphan"})
        raise RuntimeError("stopped halfway")

    _enqueue(db, queue, "half_done", attempts=1)
    queue.run_next(session_factory)
    db.expire_all()
    assert db.query(Job).filter(Job.name == "echo").count() == 0


def test_retention_keeps_latest_finished_jobs(db, session_factory, queue):
    ids = [_enqueue(db, queue, "echo", {"value": i}) for i in range(4)]
    assert queue.drain(session_factory) == 4

    db.expire_all()
    kept = [j.id for j in db.query(Job).filter(Job.queue == "testing").order_by(Job.id).all()]
    assert kept == ids[-2:]


def test_counts_and_retry(db, session_factory, queue):
    job_id = _enqueue(db, queue, "explode", attempts=1)
    _enqueue(db, queue, "echo", delay=600)
    queue.run_next(session_factory)

    db.expire_all()
    counts = queue.counts(db)
    assert counts["failed"] == 1
    assert counts["delayed"] == 1
    assert counts["completed"] == 0

    job = retry_job(db, job_id)
    assert job.state == JobState.WAITING
    assert job.attempts_made == 0
    with pytest.raises(InvalidStateError):
        retry_job(db, job_id)

    assert [j.id for j in list_jobs(db, queue="testing", state=JobState.WAITING)] == [job_id]


def _stall(db, job_id, age):
    job = db.get(Job, job_id)
    job.state = JobState.ACTIVE
    job.updated_at = utcnow() - age
    db.commit()


def test_stalled_job_is_requeued_and_counts_an_attempt(db, session_factory, queue):
    job_id = _enqueue(db, queue, "echo", {"value": "again"}, attempts=3)
    _stall(db, job_id, timedelta(days=1))

    assert queue.drain(session_factory) == 1
    db.expire_all()
    job = db.get(Job, job_id)
    assert job.state == JobState.COMPLETED
    assert job.attempts_made == 2
    assert queue.calls == [{"value": "again"}]


def test_stalled_job_without_attempts_left_fails(db, session_factory, queue):
    job_id = _enqueue(db, queue, "echo", attempts=1)
    _stall(db, job_id, timedelta(days=1))

    assert queue.run_next(session_factory) is None
    db.expire_all()
    job = db.get(Job, job_id)
    assert job.state == JobState.FAILED
    assert job.attempts_made == 1
    assert job.last_error.startswith("Job stalled")
    assert queue.calls == []


def test_recently_reserved_job_is_left_alone(db, session_factory, queue):
    job_id = _enqueue(db, queue, "echo")
    _stall(db, job_id, timedelta(seconds=5))

    assert queue.run_next(session_factory) is None
    db.expire_all()
    assert db.get(Job, job_id).state == JobState.ACTIVE


def test_get_job_is_scoped_to_its_queue(db, queue):
    job_id = _enqueue(db, queue, "explode", attempts=1)
    assert get_job(db, job_id, "testing").id == job_id
    with pytest.raises(NotFoundError):
        get_job(db, job_id, "backup")
    with pytest.raises(NotFoundError):
        retry_job(db, job_id, "backup")


def test_named_queues_are_registered():
    assert get_queue("claims").name == "claims"
    assert get_queue("backup").retention == Retention(completed=7, failed=3)
    with pytest.raises(NotFoundError):
        get_queue("email")
