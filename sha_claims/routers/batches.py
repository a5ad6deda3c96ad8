"""
Batch endpoints: grouping ready claims, printing their invoices and sending
them to SHA in one request.
"""

from __future__ import annotations

from datetime import date
from typing import Optional, Union

from fastapi import APIRouter, Depends, Path, Query, Response, status

from sha_claims.enterprise.audit import log_action
from sha_claims.enterprise.auth import ALL_ROLES, CLAIMS_MANAGER, UserContext, require_role
from sha_claims.models.database import get_db
from sha_claims.models.schemas import (
    BatchCreate,
    BatchDetail,
    BatchPage,
    BatchRead,
    BatchStatus,
    BatchType,
    ClaimRead,
    Pagination,
    QueueName,
    QueuedSubmission,
    SubmissionResult,
)
from sha_claims.services import batches as batch_service
from sha_claims.services import submission
from sha_claims.services.claims import page_count
from sha_claims.services.errors import InvalidStateError
from sha_claims.services.queue import claims_queue
from sha_claims.services.sha_client import SHAClient, get_sha_client

router = APIRouter(prefix="/batches", tags=["batches"])


@router.post("", response_model=BatchRead, status_code=status.HTTP_201_CREATED)
def api_create_batch(
    batch_in: BatchCreate,
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    batch = batch_service.create_batch(db, batch_in, user.actor)
    log_action(user.actor, user.role, "create_batch", {"batch_id": batch.id, "total_claims": batch.total_claims})
    return batch


@router.get("", response_model=BatchPage)
def api_list_batches(
    status_filter: Optional[BatchStatus] = Query(None, alias="status"),
    batch_type: Optional[BatchType] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*ALL_ROLES)),
):
    batches, total = batch_service.list_batches(db, status_filter, batch_type, page, limit)
    return BatchPage(
        batches=[BatchRead.model_validate(b) for b in batches],
        pagination=Pagination(page=page, limit=limit, total=total, pages=page_count(total, limit)),
    )


@router.get("/stats/summary")
def api_batch_statistics(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    return batch_service.batch_statistics(db, start_date, end_date)


@router.get("/{batch_id}", response_model=BatchDetail)
def api_get_batch(
    batch_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*ALL_ROLES)),
):
    batch = batch_service.get_batch(db, batch_id)
    return BatchDetail(
        batch=BatchRead.model_validate(batch),
        claims=[ClaimRead.model_validate(c) for c in sorted(batch.claims, key=lambda c: c.id)],
    )


@router.post("/{batch_id}/submit", response_model=Union[SubmissionResult, QueuedSubmission])
def api_submit_batch(
    response: Response,
    batch_id: int = Path(..., gt=0),
    queued: bool = Query(False, description="Submit from the background claims queue"),
    db=Depends(get_db),
    client: SHAClient = Depends(get_sha_client),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    """Submit every claim of a draft batch to SHA, inline or through the claims queue."""
    if queued:
        batch = batch_service.get_batch(db, batch_id)
        if batch.status not in (BatchStatus.DRAFT, BatchStatus.FAILED):
            raise InvalidStateError("Only draft or failed batches can be submitted")
        job = claims_queue.add(db, "submit_claim_batch", {"batch_id": batch_id, "submitted_by": user.actor})
        db.commit()
        response.status_code = status.HTTP_202_ACCEPTED
        log_action(user.actor, user.role, "queue_batch_submission", {"batch_id": batch_id, "job_id": job.id})
        return QueuedSubmission(job_id=job.id, queue=QueueName.CLAIMS, name=job.name)

    result = submission.submit_claim_batch(db, client, batch_id, user.actor)
    if not result.success:
        response.status_code = status.HTTP_502_BAD_GATEWAY
    log_action(user.actor, user.role, "submit_batch", {"batch_id": batch_id, "success": result.success})
    return result


@router.get("/{batch_id}/status", response_model=SubmissionResult)
def api_batch_status(
    batch_id: int = Path(..., gt=0),
    db=Depends(get_db),
    client: SHAClient = Depends(get_sha_client),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    """Ask SHA how far it has got with a submitted batch."""
    return submission.check_batch_status(db, client, batch_id)


@router.post("/{batch_id}/mark-printed")
def api_mark_batch_printed(
    batch_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    printed = batch_service.mark_printed(db, batch_id, user.actor)
    log_action(user.actor, user.role, "print_batch", {"batch_id": batch_id, "printed": printed})
    return {"batch_id": batch_id, "printed_invoices": printed}


@router.delete("/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
def api_delete_batch(
    batch_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    batch_service.delete_batch(db, batch_id)
    log_action(user.actor, user.role, "delete_batch", {"batch_id": batch_id})
    return Response(status_code=status.HTTP_204_NO_CONTENT)
