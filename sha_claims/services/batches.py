"""
Claim batches.

A batch groups claims that are ready to submit so they can be printed and
sent to SHA together.  Weekly and monthly batches sweep up unbatched claims
from their window; custom batches take an explicit list of claims.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from sha_claims.models.claims import Claim, ClaimBatch
from sha_claims.models.database import utcnow
from sha_claims.models.schemas import BatchCreate, BatchStatus, BatchType, ClaimStatus
from sha_claims.services import invoices as invoice_service
from sha_claims.services.errors import InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)


def generate_batch_number(db: Session, today: Optional[date] = None) -> str:
    today = today or utcnow().date()
    prefix = f"SHA-BATCH-{today:%Y%m%d}-"
    last = (
        db.query(ClaimBatch.batch_number)
        .filter(ClaimBatch.batch_number.like(f"{prefix}%"))
        .order_by(ClaimBatch.id.desc())
        .first()
    )
    sequence = 1
    if last:
        try:
            sequence = int(last[0].rsplit("-", 1)[-1]) + 1
        except ValueError:
            sequence = 1
    return f"{prefix}{sequence:04d}"


def batch_window(batch_type: BatchType, batch_date: date) -> Tuple[datetime, datetime]:
    """Creation-time window swept by an automatic batch, ending with the batch day."""
    end = datetime.combine(batch_date, datetime.max.time())
    if batch_type == BatchType.WEEKLY:
        start = end - timedelta(days=7)
    elif batch_type == BatchType.MONTHLY:
        start = datetime.combine(batch_date.replace(day=1), datetime.min.time())
    else:
        start = end - timedelta(hours=24)
    return start, end


def get_batch(db: Session, batch_id: int) -> ClaimBatch:
    batch = db.query(ClaimBatch).filter(ClaimBatch.id == batch_id).first()
    if batch is None:
        raise NotFoundError(f"Batch {batch_id} not found")
    return batch


def create_batch(db: Session, batch_in: BatchCreate, created_by: str) -> ClaimBatch:
    batch_date = batch_in.batch_date or utcnow().date()
    eligible = db.query(Claim).filter(Claim.status == ClaimStatus.READY_TO_SUBMIT, Claim.batch_id.is_(None))
    if batch_in.batch_type == BatchType.CUSTOM and batch_in.claim_ids:
        claims = eligible.filter(Claim.id.in_(batch_in.claim_ids)).order_by(Claim.id).all()
    else:
        start, end = batch_window(batch_in.batch_type, batch_date)
        claims = eligible.filter(Claim.created_at >= start, Claim.created_at <= end).order_by(Claim.id).all()

    if not claims:
        raise InvalidStateError("No eligible claims found for batch creation")

    batch = ClaimBatch(
        batch_number=generate_batch_number(db),
        batch_type=batch_in.batch_type,
        batch_date=batch_date,
        total_claims=len(claims),
        total_amount=round(sum(c.claim_amount for c in claims), 2),
        status=BatchStatus.DRAFT,
        created_by=created_by,
    )
    db.add(batch)
    db.flush()
    for claim in claims:
        claim.batch_id = batch.id
        claim.update_timestamp()
    db.commit()
    db.refresh(batch)
    logger.info("Created %s batch %s with %d claims", batch.batch_type.value, batch.batch_number, len(claims))
    return batch


def list_batches(
    db: Session,
    status: Optional[BatchStatus] = None,
    batch_type: Optional[BatchType] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[ClaimBatch], int]:
    limit = max(1, min(limit, 100))
    page = max(1, page)
    query = db.query(ClaimBatch)
    if status is not None:
        query = query.filter(ClaimBatch.status == status)
    if batch_type is not None:
        query = query.filter(ClaimBatch.batch_type == batch_type)
    total = query.count()
    batches = (
        query.order_by(ClaimBatch.created_at.desc(), ClaimBatch.id.desc()).offset((page - 1) * limit).limit(limit).all()
    )
    return batches, total


def mark_printed(db: Session, batch_id: int, printed_by: str) -> int:
    """Print every invoice in the batch; returns how many were printed."""
    batch = get_batch(db, batch_id)
    now = utcnow()
    batch.printed_invoices = True
    batch.printed_at = now
    batch.printed_by = printed_by
    batch.update_timestamp()
    db.commit()
    invoice_ids = [
        claim.invoice.id for claim in batch.claims if claim.invoice is not None and not claim.invoice.is_locked
    ]
    printed = 0
    for invoice_id in invoice_ids:
        invoice_service.mark_printed(db, invoice_id, printed_by)
        printed += 1
    return printed


def delete_batch(db: Session, batch_id: int) -> None:
    batch = get_batch(db, batch_id)
    if batch.status != BatchStatus.DRAFT:
        raise InvalidStateError("Only draft batches can be deleted")
    for claim in list(batch.claims):
        claim.batch_id = None
        claim.update_timestamp()
    db.delete(batch)
    db.commit()
    logger.info("Deleted batch %s", batch.batch_number)


def batch_statistics(db: Session, start_date: Optional[date] = None, end_date: Optional[date] = None) -> Dict[str, Any]:
    query = db.query(ClaimBatch)
    if start_date is not None and end_date is not None:
        query = query.filter(ClaimBatch.batch_date >= start_date, ClaimBatch.batch_date <= end_date)
    batches = query.all()

    def _count(**conditions: Any) -> int:
        return sum(1 for b in batches if all(getattr(b, k) == v for k, v in conditions.items()))

    return {
        "total_batches": len(batches),
        "draft_batches": _count(status=BatchStatus.DRAFT),
        "submitted_batches": _count(status=BatchStatus.SUBMITTED),
        "completed_batches": _count(status=BatchStatus.COMPLETED),
        "failed_batches": _count(status=BatchStatus.FAILED),
        "weekly_batches": _count(batch_type=BatchType.WEEKLY),
        "monthly_batches": _count(batch_type=BatchType.MONTHLY),
        "custom_batches": _count(batch_type=BatchType.CUSTOM),
        "total_claims_in_batches": sum(b.total_claims for b in batches),
        "total_amount_in_batches": round(sum(b.total_amount for b in batches), 2),
        "batches_with_invoices": _count(invoice_generated=True),
        "batches_with_printed_invoices": _count(printed_invoices=True),
    }
