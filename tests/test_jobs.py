import json
import tarfile
from datetime import timedelta

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from sha_claims.config import settings
from sha_claims.models.database import utcnow
from sha_claims.models.inventory import InventoryBatch, InventoryItem
from sha_claims.models.jobs import Job
from sha_claims.models.schemas import ClaimStatus, JobState, StepName, WorkflowStatus
from sha_claims.services import invoices as invoice_service
from sha_claims.services import jobs
from sha_claims.services import workflow as workflow_service
from sha_claims.services.queue import (
    backup_queue,
    claims_queue,
    inventory_queue,
    notification_queue,
)
from sha_claims.worker import Worker


def _run(db, session_factory, queue, name, data=None, **kwargs):
    queue.add(db, name, data, **kwargs)
    db.commit()
    job = queue.run_next(session_factory)
    db.expire_all()
    return job


def _queued(db, queue_name, job_name):
    return db.query(Job).filter(Job.queue == queue_name, Job.name == job_name).order_by(Job.id).all()


def _audit_entries(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


# ---------------------------------------------------------------------------
# Claims queue
# ---------------------------------------------------------------------------

def test_submit_single_claim_job(db, session_factory, fake_sha, make_ready_claim):
    claim = make_ready_claim()
    invoice_service.generate_invoice_for_claim(db, claim.id, "manager")

    job = _run(db, session_factory, claims_queue, "submit_single_claim", {"claim_id": claim.id, "submitted_by": "mgr"})
    assert job.state == JobState.COMPLETED
    assert json.loads(job.result) == {"success": True, "sha_reference": "SHA-REF-0001"}
    db.refresh(claim)
    assert claim.status == ClaimStatus.SUBMITTED
    assert claim.invoice.submitted_by == "mgr"


def test_rejected_submission_is_retried(db, session_factory, fake_sha, make_ready_claim):
    claim = make_ready_claim()
    invoice_service.generate_invoice_for_claim(db, claim.id, "manager")
    fake_sha.reject_with = 502

    job = _run(db, session_factory, claims_queue, "submit_single_claim", {"claim_id": claim.id})
    assert job.state == JobState.DELAYED
    assert job.last_error.startswith("SHASubmissionError: SHA returned 502")


def test_submission_of_unknown_claim_fails_without_retry(db, session_factory, fake_sha):
    job = _run(db, session_factory, claims_queue, "submit_single_claim", {"claim_id": 404})
    assert job.state == JobState.FAILED
    assert "Claim 404 not found" in job.last_error


def test_submit_claim_batch_job(db, session_factory, fake_sha, make_ready_claim):
    from sha_claims.models.schemas import BatchCreate, BatchType
    from sha_claims.services import batches as batch_service

    claim = make_ready_claim()
    invoice_service.generate_invoice_for_claim(db, claim.id, "manager")
    batch = batch_service.create_batch(db, BatchCreate(batch_type=BatchType.WEEKLY), "manager")
    job = _run(db, session_factory, claims_queue, "submit_claim_batch", {"batch_id": batch.id})
    assert json.loads(job.result)["sha_batch_reference"] == "SHA-BREF-0001"


def test_reconcile_claims_job(db, session_factory, fake_sha, make_ready_claim):
    claim = make_ready_claim()
    invoice_service.generate_invoice_for_claim(db, claim.id, "manager")
    _run(db, session_factory, claims_queue, "submit_single_claim", {"claim_id": claim.id})
    fake_sha.claim_statuses["SHA-REF-0001"] = {"status": "approved", "approved_amount": 1500}

    job = _run(db, session_factory, claims_queue, "reconcile_claims")
    assert json.loads(job.result) == {"success": True, "checked": 1, "updated": 1, "errors": 0}
    db.refresh(claim)
    assert claim.status == ClaimStatus.APPROVED


def test_process_workflow_job_runs_automation(db, session_factory, make_documented_claim):
    claim = make_documented_claim()
    wf = workflow_service.initialize_workflow(db, claim.id, "reception")
    for name in (StepName.CLAIM_CREATION, StepName.CLINICAL_REVIEW):
        workflow_service.complete_step(db, wf.id, name, "clinician")
    workflow_service.complete_step(db, wf.id, StepName.DOCUMENT_COLLECTION, "clinician")

    job = _run(db, session_factory, claims_queue, "process_workflow", {"workflow_id": wf.id})
    result = json.loads(job.result)
    assert result["current_step"] == StepName.INVOICE_REVIEW.value
    assert result["overall_status"] == WorkflowStatus.IN_PROGRESS.value


# ---------------------------------------------------------------------------
# Inventory queue
# ---------------------------------------------------------------------------

@pytest.fixture
def stock(db):
    today = utcnow().date()
    paracetamol = InventoryItem(name="Paracetamol 500mg", unit="tabs", reorder_level=100, reorder_quantity=500)
    paracetamol.batches = [
        InventoryBatch(batch_number="P-1", quantity=40, expiry_date=today + timedelta(days=10)),
        InventoryBatch(batch_number="P-0", quantity=900, expiry_date=today - timedelta(days=1)),
    ]
    amoxicillin = InventoryItem(name="Amoxicillin 250mg", unit="caps", reorder_level=50, reorder_quantity=200)
    amoxicillin.batches = [
        InventoryBatch(batch_number="A-1", quantity=300, expiry_date=today + timedelta(days=90)),
    ]
    gloves = InventoryItem(name="Examination gloves", unit="boxes", reorder_level=5, reorder_quantity=20)
    db.add_all([paracetamol, amoxicillin, gloves])
    db.commit()
    return {"paracetamol": paracetamol, "amoxicillin": amoxicillin, "gloves": gloves}


def test_check_low_stock_queues_one_email_per_item(db, session_factory, stock):
    job = _run(db, session_factory, inventory_queue, "check_low_stock")
    assert json.loads(job.result) == {"success": True, "low_stock_count": 2}

    emails = [json.loads(j.payload) for j in _queued(db, "notification", "send_email")]
    assert len(emails) == 2
    assert {e["recipient"] for e in emails} == {settings.admin_email}
    assert {e["type"] for e in emails} == {"low_stock_alert"}
    messages = sorted(e["message"] for e in emails)
    assert messages[0] == "Low stock alert: Examination gloves has only 0 units remaining"
    assert messages[1] == "Low stock alert: Paracetamol 500mg has only 40 units remaining"


def test_check_expiring_items_queues_one_summary(db, session_factory, stock):
    job = _run(db, session_factory, inventory_queue, "check_expiring_items")
    assert json.loads(job.result) == {"success": True, "expiring_count": 1}

    emails = _queued(db, "notification", "send_email")
    assert len(emails) == 1
    payload = json.loads(emails[0].payload)
    assert payload["type"] == "expiry_alert"
    assert [i["batch_number"] for i in payload["metadata"]["items"]] == ["P-1"]


def test_generate_reorder_report(db, session_factory, stock):
    job = _run(db, session_factory, inventory_queue, "generate_reorder_report")
    items = {i["name"]: i for i in json.loads(job.result)["items"]}
    assert set(items) == {"Paracetamol 500mg", "Examination gloves"}
    assert items["Paracetamol 500mg"]["suggested_quantity"] == 500
    assert items["Examination gloves"]["current_stock"] == 0


# ---------------------------------------------------------------------------
# Notification queue
# ---------------------------------------------------------------------------

def test_send_email_is_audited(db, session_factory, audit_file):
    data = {"recipient": "admin@clinic.test", "message": "Stock is low", "type": "low_stock_alert"}
    job = _run(db, session_factory, notification_queue, "send_email", data)
    assert job.state == JobState.COMPLETED

    entry = _audit_entries(audit_file)[-1]
    assert entry["action"] == "send_email"
    assert entry["metadata"]["recipient"] == "admin@clinic.test"


def test_notification_without_recipient_is_retried(db, session_factory):
    job = _run(db, session_factory, notification_queue, "send_sms", {"message": "hello"})
    assert job.state == JobState.DELAYED
    assert "recipient" in job.last_error


def test_overdue_reminder_builds_message(db, session_factory, audit_file):
    data = {"recipient": "+254700000000", "invoice_number": "SHA-INV-202501-000001"}
    job = _run(db, session_factory, notification_queue, "send_overdue_reminder", data)
    assert json.loads(job.result)["channel"] == "sms"
    entry = _audit_entries(audit_file)[-1]
    assert entry["action"] == "send_sms"
    assert "SHA-INV-202501-000001 is overdue" in entry["metadata"]["message"]


# ---------------------------------------------------------------------------
# Backup queue
# ---------------------------------------------------------------------------

def test_database_backup_copies_sqlite(db, session_factory, tmp_path, make_claim):
    make_claim()
    job = _run(db, session_factory, backup_queue, "database_backup", {"destination": str(tmp_path / "backups")})
    assert job.state == JobState.COMPLETED, job.last_error

    path = json.loads(job.result)["path"]
    assert path.startswith(str(tmp_path / "backups" / "backup-"))
    assert path.endswith(".db")
    import sqlite3
    copy = sqlite3.connect(path)
    try:
        assert copy.execute("SELECT COUNT(*) FROM sha_claims").fetchone()[0] == 1
    finally:
        copy.close()


def test_file_backup_archives_uploads(db, session_factory, tmp_path):
    uploads = tmp_path / "uploads"
    uploads.mkdir()
    (uploads / "labs.pdf").write_bytes(b"%PDF-1.4")

    data = {"source": str(uploads), "destination": str(tmp_path / "backups")}
    job = _run(db, session_factory, backup_queue, "file_backup", data)
    archive = json.loads(job.result)["path"]
    with tarfile.open(archive) as tar:
        assert "./labs.pdf" in tar.getnames()


def test_file_backup_of_missing_folder_fails(db, session_factory, tmp_path):
    job = _run(db, session_factory, backup_queue, "file_backup", {"source": str(tmp_path / "nope")}, attempts=1)
    assert job.state == JobState.FAILED
    assert job.last_error.startswith("FileNotFoundError")


# ---------------------------------------------------------------------------
# Scheduling and the worker
# ---------------------------------------------------------------------------

def test_recurring_jobs_are_scheduled(session_factory):
    scheduler = BackgroundScheduler(timezone="UTC")
    jobs.schedule_recurring_jobs(scheduler, session_factory)
    scheduled = {job.id: str(job.trigger) for job in scheduler.get_jobs()}
    assert set(scheduled) == {
        "inventory:check_low_stock",
        "inventory:check_expiring_items",
        "claims:reconcile_claims",
        "backup:database_backup",
    }
    assert "hour='*/6'" in scheduled["inventory:check_low_stock"]
    assert "hour='2'" in scheduled["backup:database_backup"]


def test_enqueue_commits_its_own_job(db, session_factory):
    job_id = jobs.enqueue("inventory", "check_low_stock", factory=session_factory)
    job = db.get(Job, job_id)
    assert job.queue == "inventory"
    assert job.state == JobState.WAITING


def test_worker_runs_one_job_per_queue(db, session_factory, stock):
    inventory_queue.add(db, "check_low_stock")
    notification_queue.add(db, "send_sms", {"recipient": "+254700000000", "message": "hi"})
    db.commit()

    worker = Worker(factory=session_factory, poll_interval=0, schedule=False)
    assert worker.run_once() == 2
    db.expire_all()
    assert len(_queued(db, "notification", "send_email")) == 2

    worker.stop()
    assert worker.run_once() == 0
