"""
SHA invoice handling.

Invoices are generated for the clinic's records *before* a claim is submitted,
reviewed and printed, and locked once the claim has gone to SHA.  Every action
on an invoice is written to the SHA audit trail.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from sha_claims.models.claims import AuditTrail, Claim, ClaimBatch, Invoice
from sha_claims.models.database import utcnow
from sha_claims.models.schemas import AuditTrailRead, ClaimStatus, InvoiceStatus, StepName
from sha_claims.services import workflow as workflow_service
from sha_claims.services.claims import require_claim
from sha_claims.services.errors import InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)

PAYMENT_TERMS_DAYS = 30


def record_audit(
    db: Session,
    action: str,
    performed_by: str,
    invoice_id: Optional[int] = None,
    claim_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    db.add(
        AuditTrail(
            invoice_id=invoice_id,
            claim_id=claim_id,
            action=action,
            performed_by=performed_by,
            details=json.dumps(details or {}, default=str),
        )
    )


def generate_invoice_number(db: Session, today: Optional[date] = None) -> str:
    today = today or utcnow().date()
    prefix = f"SHA-INV-{today:%Y%m}-"
    last = (
        db.query(Invoice.invoice_number)
        .filter(Invoice.invoice_number.like(f"{prefix}%"))
        .order_by(Invoice.id.desc())
        .first()
    )
    sequence = 1
    if last:
        try:
            sequence = int(last[0].rsplit("-", 1)[-1]) + 1
        except ValueError:
            sequence = 1
    return f"{prefix}{sequence:06d}"


def get_invoice(db: Session, invoice_id: int) -> Invoice:
    invoice = db.query(Invoice).filter(Invoice.id == invoice_id).first()
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


def generate_invoice_for_claim(
    db: Session,
    claim_id: int,
    generated_by: str,
    advance_workflow: bool = True,
) -> Invoice:
    """Generate the claim's invoice, or return the one it already has."""
    claim = require_claim(db, claim_id)
    if claim.invoice is not None:
        return claim.invoice
    if claim.status != ClaimStatus.READY_TO_SUBMIT:
        raise InvalidStateError(
            f"Claim {claim.claim_number} is {claim.status.value}; invoices are generated for claims ready to submit"
        )
    now = utcnow()
    invoice = Invoice(
        invoice_number=generate_invoice_number(db),
        claim_id=claim.id,
        status=InvoiceStatus.GENERATED,
        total_amount=claim.claim_amount,
        invoice_date=now,
        due_date=now + timedelta(days=PAYMENT_TERMS_DAYS),
        generated_by=generated_by,
    )
    db.add(invoice)
    db.flush()
    record_audit(
        db,
        "INVOICE_GENERATED",
        generated_by,
        invoice_id=invoice.id,
        claim_id=claim.id,
        details={"invoice_number": invoice.invoice_number, "total_amount": invoice.total_amount},
    )
    db.commit()
    db.refresh(invoice)
    logger.info("Generated invoice %s for claim %s", invoice.invoice_number, claim.claim_number)
    if advance_workflow:
        workflow_service.advance_on_event(db, claim.id, StepName.INVOICE_GENERATION, generated_by)
    return invoice


def generate_invoices_for_batch(db: Session, batch_id: int, generated_by: str) -> List[Invoice]:
    batch = db.query(ClaimBatch).filter(ClaimBatch.id == batch_id).first()
    if batch is None:
        raise NotFoundError(f"Batch {batch_id} not found")
    blocked = [
        c.claim_number for c in batch.claims if c.invoice is None and c.status != ClaimStatus.READY_TO_SUBMIT
    ]
    if blocked:
        raise InvalidStateError(f"Claims not ready for invoicing: {', '.join(blocked)}")
    invoices = [generate_invoice_for_claim(db, claim.id, generated_by) for claim in list(batch.claims)]
    batch.invoice_generated = True
    batch.update_timestamp()
    db.commit()
    return invoices


def mark_reviewed(db: Session, invoice_id: int, reviewed_by: str) -> Invoice:
    invoice = get_invoice(db, invoice_id)
    if invoice.is_locked:
        raise InvalidStateError(f"Invoice {invoice.invoice_number} is locked")
    invoice.reviewed_at = utcnow()
    invoice.reviewed_by = reviewed_by
    if invoice.status == InvoiceStatus.GENERATED:
        invoice.status = InvoiceStatus.REVIEWED
    invoice.update_timestamp()
    record_audit(db, "INVOICE_REVIEWED", reviewed_by, invoice_id=invoice.id, claim_id=invoice.claim_id)
    db.commit()
    db.refresh(invoice)
    workflow_service.advance_on_event(db, invoice.claim_id, StepName.INVOICE_REVIEW, reviewed_by)
    return invoice


def mark_printed(db: Session, invoice_id: int, printed_by: str) -> Invoice:
    """Record a print of the invoice.  Submitted invoices are archived and read-only."""
    invoice = get_invoice(db, invoice_id)
    if invoice.is_locked or invoice.status == InvoiceStatus.SUBMITTED:
        raise InvalidStateError(f"Invoice {invoice.invoice_number} has been submitted and is locked")
    invoice.printed_at = utcnow()
    invoice.printed_by = printed_by
    invoice.print_count += 1
    invoice.status = InvoiceStatus.PRINTED
    invoice.update_timestamp()
    record_audit(
        db,
        "INVOICE_PRINTED",
        printed_by,
        invoice_id=invoice.id,
        claim_id=invoice.claim_id,
        details={"print_count": invoice.print_count},
    )
    db.commit()
    db.refresh(invoice)
    workflow_service.advance_on_event(db, invoice.claim_id, StepName.INVOICE_PRINTING, printed_by)
    return invoice


def bulk_print(db: Session, invoice_ids: List[int], printed_by: str) -> Dict[str, Any]:
    results: List[Dict[str, Any]] = []
    for invoice_id in invoice_ids:
        try:
            mark_printed(db, invoice_id, printed_by)
            results.append({"invoice_id": invoice_id, "success": True})
        except (NotFoundError, InvalidStateError) as e:
            db.rollback()
            results.append({"invoice_id": invoice_id, "success": False, "error": str(e)})
    successful = sum(1 for r in results if r["success"])
    return {
        "total": len(invoice_ids),
        "successful": successful,
        "failed": len(results) - successful,
        "results": results,
    }


def lock_for_submission(db: Session, claim: Claim, submitted_by: str) -> None:
    """Lock the claim's invoice after a successful SHA submission.  Caller commits."""
    invoice = claim.invoice
    if invoice is None:
        return
    invoice.status = InvoiceStatus.SUBMITTED
    invoice.is_locked = True
    invoice.submitted_at = utcnow()
    invoice.submitted_by = submitted_by
    invoice.update_timestamp()
    record_audit(db, "INVOICE_SUBMITTED", submitted_by, invoice_id=invoice.id, claim_id=claim.id)


def invoices_ready_for_review(db: Session) -> List[Invoice]:
    return (
        db.query(Invoice)
        .filter(Invoice.status.in_([InvoiceStatus.GENERATED, InvoiceStatus.REVIEWED]))
        .order_by(Invoice.invoice_date)
        .all()
    )


def invoices_ready_for_printing(db: Session, batch_type: str, today: Optional[date] = None) -> List[Invoice]:
    """Reviewed or freshly generated invoices from the current week or month."""
    today = today or utcnow().date()
    if batch_type == "weekly":
        start = today - timedelta(days=7)
    elif batch_type == "monthly":
        start = today.replace(day=1)
    else:
        raise InvalidStateError("Invalid batch type. Must be 'weekly' or 'monthly'")
    return (
        db.query(Invoice)
        .filter(
            Invoice.status.in_([InvoiceStatus.GENERATED, InvoiceStatus.REVIEWED]),
            Invoice.invoice_date >= datetime.combine(start, datetime.min.time()),
        )
        .order_by(Invoice.invoice_date)
        .all()
    )


def submitted_invoices(
    db: Session,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> List[Invoice]:
    query = db.query(Invoice).filter(Invoice.status == InvoiceStatus.SUBMITTED)
    if start_date is not None:
        query = query.filter(Invoice.submitted_at >= start_date)
    if end_date is not None:
        query = query.filter(Invoice.submitted_at <= end_date)
    return query.order_by(Invoice.submitted_at.desc()).all()


def compliance_report(db: Session, start_date: datetime, end_date: datetime) -> Dict[str, Any]:
    claims = (
        db.query(Claim)
        .filter(Claim.created_at >= start_date, Claim.created_at <= end_date)
        .order_by(Claim.created_at)
        .all()
    )
    details: List[Dict[str, Any]] = []
    for claim in claims:
        invoice = claim.invoice
        details.append(
            {
                "claim_id": claim.id,
                "claim_number": claim.claim_number,
                "claim_status": claim.status.value,
                "compliance_status": claim.compliance_status.value,
                "invoice_number": invoice.invoice_number if invoice else None,
                "printed_at": invoice.printed_at if invoice else None,
                "submitted_at": invoice.submitted_at if invoice else None,
            }
        )
    summary = {
        "total_claims": len(details),
        "total_invoices_generated": sum(1 for d in details if d["invoice_number"]),
        "total_invoices_printed": sum(1 for d in details if d["printed_at"]),
        "total_invoices_submitted": sum(1 for d in details if d["submitted_at"]),
        "compliance_issues": sum(1 for d in details if d["compliance_status"] == "rejected"),
        "pending_compliance": sum(1 for d in details if d["compliance_status"] == "pending"),
    }
    return {"summary": summary, "details": details}


def audit_trail(db: Session, invoice_id: int) -> List[AuditTrailRead]:
    get_invoice(db, invoice_id)
    entries = (
        db.query(AuditTrail)
        .filter(AuditTrail.invoice_id == invoice_id)
        .order_by(AuditTrail.performed_at.desc(), AuditTrail.id.desc())
        .all()
    )
    return [
        AuditTrailRead(
            id=e.id,
            invoice_id=e.invoice_id,
            claim_id=e.claim_id,
            action=e.action,
            performed_by=e.performed_by,
            performed_at=e.performed_at,
            details=json.loads(e.details),
        )
        for e in entries
    ]
