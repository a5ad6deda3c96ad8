"""
Claim management.

Claims are the billing records submitted to SHA for reimbursement.  This
module owns their creation, editing, items and supporting documents, and the
compliance checklist that the workflow's verification step relies on.
Status changes requested by users are validated against
`ALLOWED_TRANSITIONS`; submission and reconciliation move claims through
the remaining states in `services.submission`.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import date, datetime
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from sha_claims.config import settings
from sha_claims.models.claims import Claim, ClaimDocument, ClaimItem
from sha_claims.models.database import utcnow
from sha_claims.models.schemas import (
    BatchStatus,
    ClaimCreate,
    ClaimItemCreate,
    ClaimStatus,
    ClaimUpdate,
    DocumentCreate,
    DocumentUpdate,
)
from sha_claims.services.errors import InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

# Manual status changes.  SUBMITTED is only reached through SHA submission.
ALLOWED_TRANSITIONS: Dict[ClaimStatus, Set[ClaimStatus]] = {
    ClaimStatus.DRAFT: {ClaimStatus.READY_TO_SUBMIT},
    ClaimStatus.READY_TO_SUBMIT: {ClaimStatus.DRAFT},
    ClaimStatus.SUBMITTED: {ClaimStatus.APPROVED, ClaimStatus.REJECTED},
    ClaimStatus.APPROVED: {ClaimStatus.PAID},
    ClaimStatus.REJECTED: {ClaimStatus.DRAFT},
    ClaimStatus.PAID: set(),
}

EDITABLE_STATUSES = {ClaimStatus.DRAFT, ClaimStatus.READY_TO_SUBMIT}
OPEN_BATCH_STATUSES = {BatchStatus.DRAFT, BatchStatus.FAILED}

MEMBER_NUMBER_PATTERN = re.compile(r"\d{9}")
ICD10_PATTERN = re.compile(r"[A-Z]\d{2,3}(\.\d{1,4})?")


def _next_sequence(last_number: Optional[str]) -> int:
    if not last_number:
        return 1
    try:
        return int(last_number.rsplit("-", 1)[-1]) + 1
    except ValueError:
        return 1


def generate_claim_number(db: Session, today: Optional[date] = None) -> str:
    """Return the next ``CLM-YYYYMM-NNNNNN`` number for the current month."""
    today = today or utcnow().date()
    prefix = f"CLM-{today:%Y%m}-"
    last = (
        db.query(Claim.claim_number)
        .filter(Claim.claim_number.like(f"{prefix}%"))
        .order_by(Claim.id.desc())
        .first()
    )
    sequence = _next_sequence(last[0] if last else None)
    return f"{prefix}{sequence:06d}"


def _recalculate_amount(claim: Claim) -> None:
    if claim.items:
        claim.claim_amount = round(sum(item.total_price for item in claim.items), 2)


def create_claim(db: Session, claim_in: ClaimCreate, created_by: str) -> Claim:
    """Create a draft claim with optional items."""
    claim = Claim(
        claim_number=generate_claim_number(db),
        patient_name=claim_in.patient_name,
        op_number=claim_in.op_number,
        member_number=claim_in.member_number,
        national_id=claim_in.national_id,
        phone_number=claim_in.phone_number,
        visit_date=claim_in.visit_date,
        primary_diagnosis_code=claim_in.primary_diagnosis_code,
        primary_diagnosis_description=claim_in.primary_diagnosis_description,
        provider_code=settings.sha_provider_code,
        provider_name=settings.clinic_name,
        facility_level=settings.facility_level,
        claim_amount=claim_in.claim_amount,
        status=ClaimStatus.DRAFT,
        notes=claim_in.notes,
        created_by=created_by,
    )
    claim.secondary_diagnosis_codes = claim_in.secondary_diagnosis_codes
    db.add(claim)
    db.flush()  # flush to assign an ID before adding items
    for item_in in claim_in.items:
        claim.items.append(_build_item(claim.id, item_in))
    _recalculate_amount(claim)
    db.commit()
    db.refresh(claim)
    logger.info("Created claim %s (%s) for %s", claim.id, claim.claim_number, claim.op_number)
    return claim


def get_claim(db: Session, claim_id: int) -> Optional[Claim]:
    """Retrieve a claim by ID."""
    return db.query(Claim).filter(Claim.id == claim_id).first()


def require_claim(db: Session, claim_id: int) -> Claim:
    claim = get_claim(db, claim_id)
    if claim is None:
        raise NotFoundError(f"Claim {claim_id} not found")
    return claim


def list_claims(
    db: Session,
    status: Optional[ClaimStatus] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[Claim], int]:
    """Return one page of claims, newest first, and the total match count."""
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    page = max(1, page)
    query = db.query(Claim)
    if status is not None:
        query = query.filter(Claim.status == status)
    if start_date is not None:
        query = query.filter(Claim.visit_date >= start_date)
    if end_date is not None:
        query = query.filter(Claim.visit_date <= end_date)
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            or_(
                Claim.claim_number.ilike(pattern),
                Claim.patient_name.ilike(pattern),
                Claim.op_number.ilike(pattern),
                Claim.member_number.ilike(pattern),
            )
        )
    total = query.count()
    claims = query.order_by(Claim.created_at.desc(), Claim.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return claims, total


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


def _leave_open_batch(claim: Claim) -> None:
    """Take a claim out of a batch that has not gone to SHA yet."""
    batch = claim.batch
    if batch is None or batch.status not in OPEN_BATCH_STATUSES:
        return
    claim.batch = None
    remaining = [c for c in batch.claims if c is not claim]
    batch.total_claims = len(remaining)
    batch.total_amount = round(sum(c.claim_amount for c in remaining), 2)
    batch.update_timestamp()
    logger.info("Claim %s left batch %s", claim.claim_number, batch.batch_number)


def change_status(claim: Claim, new_status: ClaimStatus) -> None:
    """Apply a user-requested status change."""
    if new_status == claim.status:
        return
    if new_status not in ALLOWED_TRANSITIONS[claim.status]:
        raise InvalidStateError(
            f"Claim {claim.claim_number} cannot move from {claim.status.value} to {new_status.value}"
        )
    if new_status == ClaimStatus.READY_TO_SUBMIT and claim.claim_amount <= 0:
        raise InvalidStateError(f"Claim {claim.claim_number} has no billable amount")
    if new_status == ClaimStatus.PAID:
        claim.payment_date = utcnow()
    if new_status == ClaimStatus.DRAFT:
        claim.rejection_reason = None
        _leave_open_batch(claim)
    claim.status = new_status
    claim.update_timestamp()


def update_claim(db: Session, claim_id: int, claim_in: ClaimUpdate) -> Claim:
    claim = require_claim(db, claim_id)
    changes = claim_in.model_dump(exclude_unset=True, exclude={"status"})
    if changes and claim.status not in EDITABLE_STATUSES:
        raise InvalidStateError(f"Claim {claim.claim_number} is {claim.status.value} and can no longer be edited")
    if "claim_amount" in changes and claim.items:
        raise InvalidStateError("Claim amount is derived from the claim items")
    for field, value in changes.items():
        setattr(claim, field, value)
    if claim_in.status is not None:
        change_status(claim, claim_in.status)
    claim.update_timestamp()
    db.commit()
    db.refresh(claim)
    return claim


def delete_claim(db: Session, claim_id: int) -> None:
    claim = require_claim(db, claim_id)
    if claim.status != ClaimStatus.DRAFT:
        raise InvalidStateError("Only draft claims can be deleted")
    db.delete(claim)
    db.commit()
    logger.info("Deleted claim %s", claim_id)


def _build_item(claim_id: int, item_in: ClaimItemCreate) -> ClaimItem:
    return ClaimItem(
        claim_id=claim_id,
        service_code=item_in.service_code,
        service_description=item_in.service_description,
        quantity=item_in.quantity,
        unit_price=item_in.unit_price,
        total_price=round(item_in.quantity * item_in.unit_price, 2),
        item_type=item_in.item_type,
    )


def add_claim_item(db: Session, claim_id: int, item_in: ClaimItemCreate) -> ClaimItem:
    """Add a billable item; the claim amount follows the sum of its items."""
    claim = require_claim(db, claim_id)
    if claim.status not in EDITABLE_STATUSES:
        raise InvalidStateError(f"Claim {claim.claim_number} is {claim.status.value} and can no longer be edited")
    item = _build_item(claim.id, item_in)
    claim.items.append(item)
    _recalculate_amount(claim)
    claim.update_timestamp()
    db.commit()
    db.refresh(item)
    return item


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

def add_document(db: Session, claim_id: int, doc_in: DocumentCreate, uploaded_by: str) -> ClaimDocument:
    claim = require_claim(db, claim_id)
    document = ClaimDocument(
        claim_id=claim.id,
        document_type=doc_in.document_type,
        file_name=doc_in.file_name,
        description=doc_in.description,
        is_required=doc_in.is_required,
        uploaded_by=uploaded_by,
    )
    db.add(document)
    db.commit()
    db.refresh(document)
    return document


def get_document(db: Session, document_id: int) -> ClaimDocument:
    document = db.query(ClaimDocument).filter(ClaimDocument.id == document_id).first()
    if document is None:
        raise NotFoundError(f"Document {document_id} not found")
    return document


def update_document(db: Session, document_id: int, doc_in: DocumentUpdate, updated_by: str) -> ClaimDocument:
    """Update document metadata; verifying compliance stamps who and when."""
    document = get_document(db, document_id)
    changes = doc_in.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(document, field, value)
    if changes.get("compliance_verified"):
        document.verified_at = utcnow()
        document.verified_by = updated_by
    elif changes.get("compliance_verified") is False:
        document.verified_at = None
        document.verified_by = None
    document.update_timestamp()
    db.commit()
    db.refresh(document)
    return document


def delete_document(db: Session, document_id: int) -> None:
    document = get_document(db, document_id)
    db.delete(document)
    db.commit()


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------

def compliance_checklist(claim: Claim, today: Optional[date] = None) -> List[str]:
    """Return the reasons SHA would bounce this claim; empty when it is clean."""
    today = today or utcnow().date()
    issues: List[str] = []
    if not claim.claim_number:
        issues.append("Missing claim number")
    if not claim.member_number or not MEMBER_NUMBER_PATTERN.fullmatch(claim.member_number):
        issues.append("Invalid SHA member number")
    if not claim.primary_diagnosis_code or not ICD10_PATTERN.fullmatch(claim.primary_diagnosis_code):
        issues.append("Invalid diagnosis code")
    visit_date = claim.visit_date
    if isinstance(visit_date, datetime):
        visit_date = visit_date.date()
    if visit_date is None or visit_date > today:
        issues.append("Invalid visit date")
    if not claim.claim_amount or claim.claim_amount <= 0:
        issues.append("Invalid total amount")
    return issues


def document_issues(claim: Claim) -> List[str]:
    required = [doc for doc in claim.documents if doc.is_required]
    if not required:
        return ["No required documents attached"]
    unverified = [doc.document_type.value for doc in required if not doc.compliance_verified]
    if unverified:
        return [f"Required documents not verified: {', '.join(unverified)}"]
    return []
