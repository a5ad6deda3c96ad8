"""
Claim submission and reconciliation against the SHA API.

Submissions are logged before the request goes out and the log is updated
with the response, so a failed or interrupted submission always leaves a
trace.  Reconciliation polls SHA for every outstanding claim and applies the
decision (approval, rejection, payment) locally.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from sha_claims.config import settings
from sha_claims.models.claims import Claim, ClaimBatch, PaymentTracking, SubmissionLog
from sha_claims.models.database import utcnow
from sha_claims.models.schemas import (
    BatchStatus,
    ClaimStatus,
    StepName,
    SubmissionResult,
    SubmissionStatus,
    SubmissionType,
)
from sha_claims.services import invoices as invoice_service
from sha_claims.services import workflow as workflow_service
from sha_claims.services.claims import require_claim
from sha_claims.services.errors import InvalidStateError, NotFoundError
from sha_claims.services.sha_client import SHAClient

logger = logging.getLogger(__name__)

RETRY_INTERVAL = timedelta(seconds=60)
PAYMENT_CHECK_INTERVAL = timedelta(hours=24)

# SHA decision -> local claim status
SHA_STATUS_MAP = {
    "approved": ClaimStatus.APPROVED,
    "rejected": ClaimStatus.REJECTED,
    "paid": ClaimStatus.PAID,
}

BATCH_STATUS_MAP = {
    "processing": BatchStatus.PROCESSING,
    "completed": BatchStatus.COMPLETED,
    "failed": BatchStatus.FAILED,
}


def claim_payload(claim: Claim) -> Dict[str, Any]:
    return {
        "claim_number": claim.claim_number,
        "member_number": claim.member_number,
        "visit_date": claim.visit_date.isoformat(),
        "diagnosis": {
            "code": claim.primary_diagnosis_code,
            "description": claim.primary_diagnosis_description,
            "secondary_codes": claim.secondary_diagnosis_codes,
        },
        "services": [
            {
                "service_code": item.service_code,
                "description": item.service_description,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "total_price": item.total_price,
            }
            for item in claim.items
        ],
        "total_amount": claim.claim_amount,
    }


def _start_log(db: Session, submission_type: SubmissionType, payload: Dict[str, Any], **owner: int) -> SubmissionLog:
    column = SubmissionLog.claim_id if "claim_id" in owner else SubmissionLog.batch_id
    previous_failures = (
        db.query(SubmissionLog)
        .filter(column == next(iter(owner.values())), SubmissionLog.status == SubmissionStatus.FAILED)
        .count()
    )
    log = SubmissionLog(
        submission_type=submission_type,
        request_payload=json.dumps(payload, default=str),
        status=SubmissionStatus.PENDING,
        retry_count=previous_failures,
        **owner,
    )
    db.add(log)
    db.commit()
    return log


def _finish_log(log: SubmissionLog, result: SubmissionResult) -> None:
    log.response_payload = json.dumps(result.data, default=str) if result.data is not None else None
    if result.success:
        log.status = SubmissionStatus.SUCCESS
        log.error_message = None
        log.next_retry_at = None
    else:
        log.status = SubmissionStatus.FAILED
        log.error_message = json.dumps(result.error, default=str)
        log.next_retry_at = utcnow() + RETRY_INTERVAL * (2 ** log.retry_count)
    log.updated_at = utcnow()


def submit_single_claim(
    db: Session,
    client: SHAClient,
    claim_id: int,
    submitted_by: str,
    require_invoice: Optional[bool] = None,
) -> SubmissionResult:
    """Submit one claim to SHA and lock its invoice on success."""
    claim = require_claim(db, claim_id)
    if claim.status != ClaimStatus.READY_TO_SUBMIT:
        raise InvalidStateError(f"Claim {claim.claim_number} is {claim.status.value}, not ready to submit")
    if require_invoice is None:
        require_invoice = settings.sha_require_invoice
    if require_invoice and claim.invoice is None:
        raise InvalidStateError(f"Claim {claim.claim_number} needs an invoice before it can be submitted")

    payload = claim_payload(claim)
    payload["provider_code"] = client.provider_code
    log = _start_log(db, SubmissionType.SINGLE, payload, claim_id=claim.id)

    result = client.submit_claim(payload)
    _finish_log(log, result)

    if result.success:
        now = utcnow()
        claim.status = ClaimStatus.SUBMITTED
        claim.submission_date = now
        claim.sha_reference = result.reference
        claim.update_timestamp()
        invoice_service.lock_for_submission(db, claim, submitted_by)
        db.commit()
        logger.info("Claim %s submitted to SHA (reference %s)", claim.claim_number, result.reference)
        workflow_service.advance_on_event(db, claim.id, StepName.CLAIM_SUBMISSION, submitted_by)
    else:
        db.commit()
        logger.warning("Claim %s submission failed with status %s", claim.claim_number, result.status)
    return result


def submit_claim_batch(
    db: Session,
    client: SHAClient,
    batch_id: int,
    submitted_by: str,
    require_invoice: Optional[bool] = None,
) -> SubmissionResult:
    """Submit every claim of a batch in one request.

    Every claim must still be ready to submit (and invoiced, when invoices
    are required); otherwise nothing is sent.
    """
    batch = db.query(ClaimBatch).filter(ClaimBatch.id == batch_id).first()
    if batch is None:
        raise NotFoundError(f"Batch {batch_id} not found")
    if batch.status not in (BatchStatus.DRAFT, BatchStatus.FAILED):
        raise InvalidStateError("Only draft or failed batches can be submitted")
    claims: List[Claim] = list(batch.claims)
    if not claims:
        raise InvalidStateError("No claims found in batch")
    if require_invoice is None:
        require_invoice = settings.sha_require_invoice
    not_ready = [c.claim_number for c in claims if c.status != ClaimStatus.READY_TO_SUBMIT]
    if not_ready:
        raise InvalidStateError(f"Batch {batch.batch_number} has claims not ready to submit: {', '.join(not_ready)}")
    if require_invoice:
        uninvoiced = [c.claim_number for c in claims if c.invoice is None]
        if uninvoiced:
            raise InvalidStateError(f"Batch {batch.batch_number} has claims without invoices: {', '.join(uninvoiced)}")

    payload = {
        "batch_number": batch.batch_number,
        "batch_date": batch.batch_date.isoformat(),
        "provider_code": client.provider_code,
        "claims": [claim_payload(claim) for claim in claims],
        "total_claims": len(claims),
        "total_amount": round(sum(c.claim_amount for c in claims), 2),
    }
    log = _start_log(db, SubmissionType.BATCH, payload, batch_id=batch.id)

    result = client.submit_batch(payload)
    _finish_log(log, result)

    now = utcnow()
    if result.success:
        batch.status = BatchStatus.SUBMITTED
        batch.submission_date = now
        batch.sha_batch_reference = result.reference
        for claim in claims:
            claim.status = ClaimStatus.SUBMITTED
            claim.submission_date = now
            claim.update_timestamp()
            invoice_service.lock_for_submission(db, claim, submitted_by)
    else:
        batch.status = BatchStatus.FAILED
    batch.update_timestamp()
    db.commit()

    if result.success:
        logger.info("Batch %s submitted to SHA with %d claims", batch.batch_number, len(claims))
        for claim in claims:
            workflow_service.advance_on_event(db, claim.id, StepName.CLAIM_SUBMISSION, submitted_by)
    else:
        logger.warning("Batch %s submission failed with status %s", batch.batch_number, result.status)
    return result


def check_batch_status(db: Session, client: SHAClient, batch_id: int) -> SubmissionResult:
    batch = db.query(ClaimBatch).filter(ClaimBatch.id == batch_id).first()
    if batch is None:
        raise NotFoundError(f"Batch {batch_id} not found")
    if not batch.sha_batch_reference:
        raise InvalidStateError(f"Batch {batch.batch_number} has not been submitted")
    result = client.batch_status(batch.sha_batch_reference)
    if result.success and isinstance(result.data, dict):
        new_status = BATCH_STATUS_MAP.get(str(result.data.get("status", "")).lower())
        if new_status is not None and new_status != batch.status:
            batch.status = new_status
            if new_status == BatchStatus.COMPLETED:
                batch.completion_date = utcnow()
            batch.update_timestamp()
            db.commit()
    return result


def _touch_tracking(db: Session, claim: Claim, sha_status: Optional[str]) -> None:
    now = utcnow()
    for tracking in (
        db.query(PaymentTracking)
        .filter(PaymentTracking.claim_id == claim.id, PaymentTracking.closed_at.is_(None))
        .all()
    ):
        tracking.last_checked_at = now
        tracking.last_sha_status = sha_status
        if claim.status in (ClaimStatus.PAID, ClaimStatus.REJECTED):
            tracking.closed_at = now
            tracking.next_check_at = None
        else:
            tracking.next_check_at = now + PAYMENT_CHECK_INTERVAL


def _apply_decision(claim: Claim, data: Dict[str, Any]) -> bool:
    sha_status = str(data.get("status", "")).lower()
    new_status = SHA_STATUS_MAP.get(sha_status)
    if new_status is None or new_status == claim.status:
        return False
    if claim.status == ClaimStatus.APPROVED and new_status != ClaimStatus.PAID:
        logger.warning("Ignoring SHA status %s for approved claim %s", sha_status, claim.claim_number)
        return False
    now = utcnow()
    claim.status = new_status
    if data.get("approved_amount") is not None:
        claim.approved_amount = float(data["approved_amount"])
    if new_status in (ClaimStatus.APPROVED, ClaimStatus.PAID) and claim.approval_date is None:
        claim.approval_date = now
    if new_status == ClaimStatus.PAID:
        claim.payment_date = now
    if new_status == ClaimStatus.REJECTED:
        claim.rejection_reason = data.get("rejection_reason")
    claim.update_timestamp()
    return True


def reconcile_claims(db: Session, client: SHAClient) -> Dict[str, int]:
    """Poll SHA for every outstanding claim and apply its decision.

    A failure on one claim is logged and the run carries on with the rest.
    """
    outstanding = (
        db.query(Claim.id)
        .filter(
            Claim.status.in_([ClaimStatus.SUBMITTED, ClaimStatus.APPROVED]),
            Claim.sha_reference.isnot(None),
        )
        .order_by(Claim.id)
        .all()
    )
    counts = {"checked": 0, "updated": 0, "errors": 0}
    for (claim_id,) in outstanding:
        counts["checked"] += 1
        try:
            claim = require_claim(db, claim_id)
            result = client.claim_status(claim.sha_reference)
            if not result.success or not isinstance(result.data, dict):
                counts["errors"] += 1
                logger.warning("Could not fetch SHA status for claim %s: %s", claim.claim_number, result.error)
                continue
            if _apply_decision(claim, result.data):
                counts["updated"] += 1
                logger.info("Claim %s reconciled to %s", claim.claim_number, claim.status.value)
            _touch_tracking(db, claim, result.data.get("status"))
            db.commit()
        except Exception:
            db.rollback()
            counts["errors"] += 1
            logger.exception("Error reconciling claim %s", claim_id)
    return counts
