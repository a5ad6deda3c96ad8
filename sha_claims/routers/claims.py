"""
Claim endpoints: CRUD, billable items, supporting documents, compliance
pre-checks and SHA submission of a single claim.
"""

from __future__ import annotations

from datetime import date
from typing import List, Optional, Union

from fastapi import APIRouter, Depends, Path, Query, Response, status

from sha_claims.enterprise.audit import log_action
from sha_claims.enterprise.auth import (
    ALL_ROLES,
    CLAIMS_MANAGER,
    CLINICAL_OFFICER,
    RECEPTIONIST,
    UserContext,
    require_role,
)
from sha_claims.models.database import get_db
from sha_claims.models.schemas import (
    ClaimCreate,
    ClaimItemCreate,
    ClaimItemRead,
    ClaimPage,
    ClaimRead,
    ClaimStatus,
    ClaimUpdate,
    ComplianceCheck,
    DocumentCreate,
    DocumentRead,
    DocumentUpdate,
    Pagination,
    QueueName,
    QueuedSubmission,
    SubmissionResult,
)
from sha_claims.services import claims as claim_service
from sha_claims.services import submission
from sha_claims.services.errors import NotFoundError
from sha_claims.services.queue import claims_queue
from sha_claims.services.sha_client import SHAClient, get_sha_client

router = APIRouter(prefix="/claims", tags=["claims"])

CLAIM_EDITORS = (RECEPTIONIST, CLINICAL_OFFICER, CLAIMS_MANAGER)


@router.post("", response_model=ClaimRead, status_code=status.HTTP_201_CREATED)
def api_create_claim(
    claim_in: ClaimCreate,
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*CLAIM_EDITORS)),
):
    """Create a draft claim, optionally with its billable items."""
    claim = claim_service.create_claim(db, claim_in, user.actor)
    log_action(user.actor, user.role, "create_claim", {"claim_id": claim.id, "claim_number": claim.claim_number})
    return claim


@router.get("", response_model=ClaimPage)
def api_list_claims(
    status_filter: Optional[ClaimStatus] = Query(None, alias="status"),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*ALL_ROLES)),
):
    claims, total = claim_service.list_claims(db, status_filter, start_date, end_date, search, page, limit)
    return ClaimPage(
        claims=[ClaimRead.model_validate(c) for c in claims],
        pagination=Pagination(page=page, limit=limit, total=total, pages=claim_service.page_count(total, limit)),
    )


@router.get("/{claim_id}", response_model=ClaimRead)
def api_get_claim(
    claim_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*ALL_ROLES)),
):
    """Retrieve a claim with its items and documents."""
    return claim_service.require_claim(db, claim_id)


@router.put("/{claim_id}", response_model=ClaimRead)
def api_update_claim(
    claim_in: ClaimUpdate,
    claim_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*CLAIM_EDITORS)),
):
    claim = claim_service.update_claim(db, claim_id, claim_in)
    log_action(user.actor, user.role, "update_claim", {"claim_id": claim_id, **claim_in.model_dump(exclude_unset=True)})
    return claim


@router.delete("/{claim_id}", status_code=status.HTTP_204_NO_CONTENT)
def api_delete_claim(
    claim_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    claim_service.delete_claim(db, claim_id)
    log_action(user.actor, user.role, "delete_claim", {"claim_id": claim_id})
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{claim_id}/items", response_model=ClaimItemRead, status_code=status.HTTP_201_CREATED)
def api_add_claim_item(
    item_in: ClaimItemCreate,
    claim_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*CLAIM_EDITORS)),
):
    return claim_service.add_claim_item(db, claim_id, item_in)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

def _claim_document(db, claim_id: int, document_id: int):
    document = claim_service.get_document(db, document_id)
    if document.claim_id != claim_id:
        raise NotFoundError(f"Document {document_id} not found on claim {claim_id}")
    return document


@router.get("/{claim_id}/documents", response_model=List[DocumentRead])
def api_list_documents(
    claim_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*ALL_ROLES)),
):
    return claim_service.require_claim(db, claim_id).documents


@router.post("/{claim_id}/documents", response_model=DocumentRead, status_code=status.HTTP_201_CREATED)
def api_add_document(
    doc_in: DocumentCreate,
    claim_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*CLAIM_EDITORS)),
):
    """Attach document metadata to a claim.  The file itself is stored elsewhere."""
    return claim_service.add_document(db, claim_id, doc_in, user.actor)


@router.put("/{claim_id}/documents/{document_id}", response_model=DocumentRead)
def api_update_document(
    doc_in: DocumentUpdate,
    claim_id: int = Path(..., gt=0),
    document_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLINICAL_OFFICER, CLAIMS_MANAGER)),
):
    _claim_document(db, claim_id, document_id)
    document = claim_service.update_document(db, document_id, doc_in, user.actor)
    if doc_in.compliance_verified is not None:
        log_action(
            user.actor,
            user.role,
            "verify_document",
            {"claim_id": claim_id, "document_id": document_id, "verified": doc_in.compliance_verified},
        )
    return document


@router.delete("/{claim_id}/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
def api_delete_document(
    claim_id: int = Path(..., gt=0),
    document_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*CLAIM_EDITORS)),
):
    _claim_document(db, claim_id, document_id)
    claim_service.delete_document(db, document_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Compliance and submission
# ---------------------------------------------------------------------------

@router.get("/{claim_id}/compliance", response_model=ComplianceCheck)
def api_check_compliance(
    claim_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*ALL_ROLES)),
):
    """Dry-run of the compliance verification step; changes nothing."""
    claim = claim_service.require_claim(db, claim_id)
    issues = claim_service.compliance_checklist(claim) + claim_service.document_issues(claim)
    return ComplianceCheck(claim_id=claim.id, compliant=not issues, issues=issues)


@router.post("/{claim_id}/submit", response_model=Union[SubmissionResult, QueuedSubmission])
def api_submit_claim(
    response: Response,
    claim_id: int = Path(..., gt=0),
    queued: bool = Query(False, description="Submit from the background claims queue"),
    db=Depends(get_db),
    client: SHAClient = Depends(get_sha_client),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    """Submit one claim to SHA, inline or through the claims queue."""
    if queued:
        claim_service.require_claim(db, claim_id)
        job = claims_queue.add(db, "submit_single_claim", {"claim_id": claim_id, "submitted_by": user.actor})
        db.commit()
        response.status_code = status.HTTP_202_ACCEPTED
        log_action(user.actor, user.role, "queue_claim_submission", {"claim_id": claim_id, "job_id": job.id})
        return QueuedSubmission(job_id=job.id, queue=QueueName.CLAIMS, name=job.name)

    result = submission.submit_single_claim(db, client, claim_id, user.actor)
    if not result.success:
        response.status_code = status.HTTP_502_BAD_GATEWAY
    log_action(user.actor, user.role, "submit_claim", {"claim_id": claim_id, "success": result.success})
    return result
