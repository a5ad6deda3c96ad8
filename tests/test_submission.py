import json

import httpx
import pytest

from sha_claims.models.claims import PaymentTracking, SubmissionLog
from sha_claims.models.schemas import (
    BatchCreate,
    BatchStatus,
    BatchType,
    ClaimStatus,
    InvoiceStatus,
    StepName,
    SubmissionStatus,
)
from sha_claims.services import batches as batch_service
from sha_claims.services import invoices as invoice_service
from sha_claims.services import submission
from sha_claims.services import workflow as workflow_service
from sha_claims.services.errors import InvalidStateError
from sha_claims.services.sha_client import SHAClient


@pytest.fixture
def sha(fake_sha):
    client = fake_sha.client()
    yield client
    client.close()


def _invoiced_claim(db, make_ready_claim, **overrides):
    claim = make_ready_claim(**overrides)
    invoice_service.generate_invoice_for_claim(db, claim.id, "manager")
    db.refresh(claim)
    return claim


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

def test_client_sends_auth_and_provider_headers(fake_sha, sha):
    result = sha.submit_claim({"claim_number": "CLM-1"})
    assert result.success is True
    assert result.reference == "SHA-REF-0001"
    request = fake_sha.requests[0]
    assert request.headers["Authorization"] == "Bearer test-key"
    assert request.headers["X-Provider-Code"] == "CLINIC001"
    assert json.loads(request.content) == {"claim_number": "CLM-1"}


def test_client_reports_http_errors_without_raising(fake_sha, sha):
    fake_sha.reject_with = 422
    result = sha.submit_claim({"claim_number": "CLM-1"})
    assert result.success is False
    assert result.status == 422
    assert result.error == {"error": "Invalid member number"}


def test_client_retries_transport_errors_then_gives_up():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with SHAClient(base_url="https://sha.test", transport=httpx.MockTransport(handler), retry_wait=0) as client:
        result = client.claim_status("SHA-REF-0001")
    assert len(calls) == 3
    assert result.success is False
    assert result.status == 503


def test_client_recovers_after_a_transient_error():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(200, json={"status": "approved"})

    with SHAClient(base_url="https://sha.test", transport=httpx.MockTransport(handler), retry_wait=0) as client:
        result = client.claim_status("SHA-REF-0001")
    assert result.success is True
    assert result.data == {"status": "approved"}


# ---------------------------------------------------------------------------
# Single claims
# ---------------------------------------------------------------------------

def test_submit_single_claim_locks_invoice(db, sha, make_ready_claim):
    claim = _invoiced_claim(db, make_ready_claim)
    result = submission.submit_single_claim(db, sha, claim.id, "manager")

    assert result.success is True
    db.refresh(claim)
    assert claim.status == ClaimStatus.SUBMITTED
    assert claim.sha_reference == "SHA-REF-0001"
    assert claim.submission_date is not None
    assert claim.invoice.status == InvoiceStatus.SUBMITTED
    assert claim.invoice.is_locked is True

    log = db.query(SubmissionLog).filter(SubmissionLog.claim_id == claim.id).one()
    assert log.status == SubmissionStatus.SUCCESS
    assert json.loads(log.request_payload)["claim_number"] == claim.claim_number
    assert json.loads(log.request_payload)["provider_code"] == "CLINIC001"


def test_submission_requires_invoice_by_default(db, sha, make_ready_claim):
    claim = make_ready_claim()
    with pytest.raises(InvalidStateError):
        submission.submit_single_claim(db, sha, claim.id, "manager")

    result = submission.submit_single_claim(db, sha, claim.id, "manager", require_invoice=False)
    assert result.success is True


def test_draft_claims_cannot_be_submitted(db, sha, make_claim):
    with pytest.raises(InvalidStateError):
        submission.submit_single_claim(db, sha, make_claim().id, "manager")


def test_failed_submission_is_logged_for_retry(db, fake_sha, sha, make_ready_claim):
    claim = _invoiced_claim(db, make_ready_claim)
    fake_sha.reject_with = 500
    submission.submit_single_claim(db, sha, claim.id, "manager")
    result = submission.submit_single_claim(db, sha, claim.id, "manager")

    assert result.success is False
    db.refresh(claim)
    assert claim.status == ClaimStatus.READY_TO_SUBMIT
    assert claim.invoice.is_locked is False
    logs = db.query(SubmissionLog).filter(SubmissionLog.claim_id == claim.id).order_by(SubmissionLog.id).all()
    assert [log.status for log in logs] == [SubmissionStatus.FAILED, SubmissionStatus.FAILED]
    assert [log.retry_count for log in logs] == [0, 1]
    assert logs[1].next_retry_at > logs[0].next_retry_at


def test_submission_advances_the_workflow(db, sha, make_documented_claim):
    claim = make_documented_claim()
    wf = workflow_service.initialize_workflow(db, claim.id, "reception")
    for name in (StepName.CLAIM_CREATION, StepName.CLINICAL_REVIEW, StepName.DOCUMENT_COLLECTION):
        workflow_service.complete_step(db, wf.id, name, "clinician")
    workflow_service.process_automated_steps(db, wf.id)
    db.refresh(claim)
    invoice_service.mark_reviewed(db, claim.invoice.id, "clinician")
    invoice_service.mark_printed(db, claim.invoice.id, "manager")

    submission.submit_single_claim(db, sha, claim.id, "manager")

    wf = workflow_service.require_workflow(db, wf.id)
    db.refresh(wf)
    statuses = {s.step_name: s.status.value for s in wf.steps}
    assert statuses[StepName.CLAIM_SUBMISSION] == "completed"
    assert statuses[StepName.PAYMENT_TRACKING] == "completed"
    assert wf.overall_status.value == "completed"


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

def test_submit_batch_marks_every_claim_submitted(db, sha, make_ready_claim):
    claims = [_invoiced_claim(db, make_ready_claim, op_number=f"OP-30{i}") for i in range(2)]
    batch = batch_service.create_batch(db, BatchCreate(batch_type=BatchType.WEEKLY), "manager")

    result = submission.submit_claim_batch(db, sha, batch.id, "manager")
    assert result.success is True
    db.refresh(batch)
    assert batch.status == BatchStatus.SUBMITTED
    assert batch.sha_batch_reference == "SHA-BREF-0001"
    for claim in claims:
        db.refresh(claim)
        assert claim.status == ClaimStatus.SUBMITTED
        assert claim.invoice.is_locked is True

    with pytest.raises(InvalidStateError):
        submission.submit_claim_batch(db, sha, batch.id, "manager")


def test_batch_with_a_claim_no_longer_ready_is_not_sent(db, fake_sha, sha, make_ready_claim):
    claim = _invoiced_claim(db, make_ready_claim)
    batch = batch_service.create_batch(db, BatchCreate(batch_type=BatchType.WEEKLY), "manager")
    claim.status = ClaimStatus.DRAFT
    db.commit()

    with pytest.raises(InvalidStateError, match="not ready to submit"):
        submission.submit_claim_batch(db, sha, batch.id, "manager")
    assert fake_sha.requests == []
    db.refresh(batch)
    db.refresh(claim)
    assert batch.status == BatchStatus.DRAFT
    assert claim.status == ClaimStatus.DRAFT
    assert db.query(SubmissionLog).count() == 0


def test_batch_submission_requires_invoices_by_default(db, sha, make_ready_claim):
    make_ready_claim()
    batch = batch_service.create_batch(db, BatchCreate(batch_type=BatchType.WEEKLY), "manager")
    with pytest.raises(InvalidStateError, match="without invoices"):
        submission.submit_claim_batch(db, sha, batch.id, "manager")

    result = submission.submit_claim_batch(db, sha, batch.id, "manager", require_invoice=False)
    assert result.success is True


def test_failed_batch_can_be_resubmitted(db, fake_sha, sha, make_ready_claim):
    _invoiced_claim(db, make_ready_claim)
    batch = batch_service.create_batch(db, BatchCreate(batch_type=BatchType.WEEKLY), "manager")
    fake_sha.reject_with = 503
    assert submission.submit_claim_batch(db, sha, batch.id, "manager").success is False
    db.refresh(batch)
    assert batch.status == BatchStatus.FAILED

    fake_sha.reject_with = None
    assert submission.submit_claim_batch(db, sha, batch.id, "manager").success is True


def test_check_batch_status_applies_sha_progress(db, fake_sha, sha, make_ready_claim):
    _invoiced_claim(db, make_ready_claim)
    batch = batch_service.create_batch(db, BatchCreate(batch_type=BatchType.WEEKLY), "manager")
    with pytest.raises(InvalidStateError):
        submission.check_batch_status(db, sha, batch.id)

    submission.submit_claim_batch(db, sha, batch.id, "manager")
    fake_sha.batch_statuses["SHA-BREF-0001"] = {"status": "completed"}
    submission.check_batch_status(db, sha, batch.id)
    db.refresh(batch)
    assert batch.status == BatchStatus.COMPLETED
    assert batch.completion_date is not None


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def test_reconcile_applies_sha_decisions(db, fake_sha, sha, make_ready_claim):
    approved = _invoiced_claim(db, make_ready_claim, op_number="OP-401")
    rejected = _invoiced_claim(db, make_ready_claim, op_number="OP-402")
    pending = _invoiced_claim(db, make_ready_claim, op_number="OP-403")
    for claim in (approved, rejected, pending):
        submission.submit_single_claim(db, sha, claim.id, "manager")
        db.refresh(claim)

    fake_sha.claim_statuses[approved.sha_reference] = {"status": "approved", "approved_amount": 1200}
    fake_sha.claim_statuses[rejected.sha_reference] = {"status": "rejected", "rejection_reason": "Not covered"}

    counts = submission.reconcile_claims(db, sha)
    assert counts == {"checked": 3, "updated": 2, "errors": 0}

    db.refresh(approved)
    db.refresh(rejected)
    db.refresh(pending)
    assert approved.status == ClaimStatus.APPROVED
    assert approved.approved_amount == 1200
    assert approved.approval_date is not None
    assert rejected.status == ClaimStatus.REJECTED
    assert rejected.rejection_reason == "Not covered"
    assert pending.status == ClaimStatus.SUBMITTED

    fake_sha.claim_statuses[approved.sha_reference] = {"status": "paid"}
    counts = submission.reconcile_claims(db, sha)
    assert counts == {"checked": 2, "updated": 1, "errors": 0}
    db.refresh(approved)
    assert approved.status == ClaimStatus.PAID
    assert approved.payment_date is not None


def test_reconcile_counts_errors_and_carries_on(db, fake_sha, make_ready_claim):
    first = _invoiced_claim(db, make_ready_claim, op_number="OP-501")
    second = _invoiced_claim(db, make_ready_claim, op_number="OP-502")
    with fake_sha.client() as sha:
        submission.submit_single_claim(db, sha, first.id, "manager")
        submission.submit_single_claim(db, sha, second.id, "manager")
    db.refresh(first)
    db.refresh(second)

    def handler(request):
        if request.url.path.endswith(first.sha_reference):
            return httpx.Response(500, json={"error": "upstream"})
        return httpx.Response(200, json={"status": "paid"})

    with SHAClient(base_url="https://sha.test", transport=httpx.MockTransport(handler), retry_wait=0) as sha:
        counts = submission.reconcile_claims(db, sha)
    assert counts == {"checked": 2, "updated": 1, "errors": 1}
    db.refresh(second)
    assert second.status == ClaimStatus.PAID


def test_reconcile_closes_payment_tracking(db, fake_sha, sha, make_ready_claim):
    claim = _invoiced_claim(db, make_ready_claim)
    submission.submit_single_claim(db, sha, claim.id, "manager")
    db.add(PaymentTracking(claim_id=claim.id, invoice_id=claim.invoice.id))
    db.commit()
    db.refresh(claim)

    fake_sha.claim_statuses[claim.sha_reference] = {"status": "approved"}
    submission.reconcile_claims(db, sha)
    tracking = db.query(PaymentTracking).filter(PaymentTracking.claim_id == claim.id).one()
    assert tracking.last_sha_status == "approved"
    assert tracking.closed_at is None
    assert tracking.next_check_at is not None

    fake_sha.claim_statuses[claim.sha_reference] = {"status": "paid"}
    submission.reconcile_claims(db, sha)
    db.refresh(tracking)
    assert tracking.closed_at is not None
    assert tracking.next_check_at is None
