"""
Invoice endpoints.

Invoices are generated for claims that are ready to submit, reviewed and
printed for the clinic's records, and locked once their claim is submitted.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Response, status

from sha_claims.enterprise.audit import log_action
from sha_claims.enterprise.auth import ALL_ROLES, CLAIMS_MANAGER, CLINICAL_OFFICER, UserContext, require_role
from sha_claims.models.database import get_db
from sha_claims.models.schemas import (
    AuditTrailRead,
    BulkPrintRequest,
    BulkPrintResult,
    ComplianceReport,
    InvoiceRead,
    SubmissionResult,
)
from sha_claims.services import invoices as invoice_service
from sha_claims.services import submission
from sha_claims.services.sha_client import SHAClient, get_sha_client

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.post("/generate/{claim_id}", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED)
def api_generate_invoice(
    claim_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    invoice = invoice_service.generate_invoice_for_claim(db, claim_id, user.actor)
    log_action(user.actor, user.role, "generate_invoice", {"claim_id": claim_id, "invoice_id": invoice.id})
    return invoice


@router.post("/generate/batch/{batch_id}", response_model=List[InvoiceRead], status_code=status.HTTP_201_CREATED)
def api_generate_batch_invoices(
    batch_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    invoices = invoice_service.generate_invoices_for_batch(db, batch_id, user.actor)
    log_action(user.actor, user.role, "generate_batch_invoices", {"batch_id": batch_id, "count": len(invoices)})
    return invoices


@router.get("/ready-for-review", response_model=List[InvoiceRead])
def api_ready_for_review(db=Depends(get_db), user: UserContext = Depends(require_role(CLAIMS_MANAGER, CLINICAL_OFFICER))):
    return invoice_service.invoices_ready_for_review(db)


@router.get("/ready-for-printing/{batch_type}", response_model=List[InvoiceRead])
def api_ready_for_printing(
    batch_type: str = Path(..., description="weekly or monthly"),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    return invoice_service.invoices_ready_for_printing(db, batch_type)


@router.get("/submitted-archive", response_model=List[InvoiceRead])
def api_submitted_archive(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*ALL_ROLES)),
):
    """Read-only archive of invoices whose claims went to SHA."""
    return invoice_service.submitted_invoices(db, start_date, end_date)


@router.get("/compliance/report", response_model=ComplianceReport)
def api_compliance_report(
    start_date: datetime = Query(...),
    end_date: datetime = Query(...),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    return invoice_service.compliance_report(db, start_date, end_date)


@router.post("/bulk/print", response_model=BulkPrintResult)
def api_bulk_print(
    request: BulkPrintRequest,
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    result = invoice_service.bulk_print(db, request.invoice_ids, user.actor)
    log_action(user.actor, user.role, "bulk_print_invoices", {"invoice_ids": request.invoice_ids})
    return result


@router.get("/{invoice_id}", response_model=InvoiceRead)
def api_get_invoice(
    invoice_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*ALL_ROLES)),
):
    return invoice_service.get_invoice(db, invoice_id)


@router.post("/{invoice_id}/review", response_model=InvoiceRead)
def api_review_invoice(
    invoice_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER, CLINICAL_OFFICER)),
):
    return invoice_service.mark_reviewed(db, invoice_id, user.actor)


@router.post("/{invoice_id}/print", response_model=InvoiceRead)
def api_print_invoice(
    invoice_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    return invoice_service.mark_printed(db, invoice_id, user.actor)


@router.post("/{invoice_id}/submit", response_model=SubmissionResult)
def api_submit_invoice(
    response: Response,
    invoice_id: int = Path(..., gt=0),
    db=Depends(get_db),
    client: SHAClient = Depends(get_sha_client),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    """Submit the invoice's claim to SHA; the invoice is locked on success."""
    invoice = invoice_service.get_invoice(db, invoice_id)
    result = submission.submit_single_claim(db, client, invoice.claim_id, user.actor)
    if not result.success:
        response.status_code = status.HTTP_502_BAD_GATEWAY
    log_action(user.actor, user.role, "submit_invoice", {"invoice_id": invoice_id, "success": result.success})
    return result


@router.get("/{invoice_id}/audit", response_model=List[AuditTrailRead])
def api_invoice_audit(
    invoice_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    return invoice_service.audit_trail(db, invoice_id)
