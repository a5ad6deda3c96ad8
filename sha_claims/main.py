"""
FastAPI application exposing the SHA claims API.

This module wires the claims, invoice, batch and job routers together with
the claims workflow engine.  Domain errors raised by the services are turned
into HTTP responses here, so endpoints simply call the service layer.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Path, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .enterprise.audit import log_action, read_actions
from .enterprise.auth import ADMIN, ALL_ROLES, CLAIMS_MANAGER, CLINICAL_OFFICER, UserContext, require_role
from .models.database import get_db, init_db
from .models.schemas import ReasonIn, StepAction, StepName, WorkflowCreate, WorkflowRead, WorkflowStatus
from .routers import batches, claims, invoices, jobs
from .services import workflow as workflow_service
from .services.errors import ConflictError, InvalidStateError, NotFoundError

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

WORKFLOW_ROLES = (CLAIMS_MANAGER, CLINICAL_OFFICER)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create all tables at startup.  In production you may use alembic migrations.
    init_db()
    yield


app = FastAPI(title="SHA Claims Service", version="0.1.0", lifespan=lifespan)

# Allow cross-origin requests for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


app.include_router(claims.router)
app.include_router(invoices.router)
app.include_router(batches.router)
app.include_router(jobs.router)


@app.get("/health")
def api_health():
    return {"status": "ok", "service": "sha-claims", "provider_code": settings.sha_provider_code}


@app.get("/audit")
def api_audit_log(
    limit: int = Query(100, ge=1, le=1000),
    user: UserContext = Depends(require_role(ADMIN)),
):
    """Most recent audit log entries, newest first."""
    return read_actions(limit)


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------

@app.post("/workflows", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
def api_create_workflow(
    workflow_in: WorkflowCreate,
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*WORKFLOW_ROLES)),
):
    """Start the claims workflow for a claim."""
    wf = workflow_service.initialize_workflow(db, workflow_in.claim_id, user.actor)
    log_action(user.actor, user.role, "initialize_workflow", {"workflow_id": wf.id, "claim_id": wf.claim_id})
    if workflow_in.run_automation:
        wf = workflow_service.process_automated_steps(db, wf.id, user.actor)
    return workflow_service.to_workflow_read(wf)


@app.get("/workflows", response_model=List[WorkflowRead])
def api_list_workflows(
    status_filter: Optional[WorkflowStatus] = Query(None, alias="status"),
    claim_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*ALL_ROLES)),
):
    """List workflows, newest first."""
    wfs = workflow_service.list_workflows(db, status_filter, claim_id, date_from, date_to)
    return [workflow_service.to_workflow_read(wf) for wf in wfs]


@app.get("/workflows/statistics")
def api_workflow_statistics(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    return workflow_service.workflow_statistics(db, date_from, date_to)


@app.get("/workflows/{workflow_id}", response_model=WorkflowRead)
def api_get_workflow(
    workflow_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*ALL_ROLES)),
):
    """Retrieve a workflow with its steps and activity log."""
    return workflow_service.to_workflow_read(workflow_service.require_workflow(db, workflow_id))


@app.post("/workflows/{workflow_id}/steps/{step_name}/complete", response_model=WorkflowRead)
def api_complete_step(
    action: StepAction,
    step_name: StepName,
    workflow_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*WORKFLOW_ROLES)),
):
    """Complete a manual step, then run any automated steps it unblocks."""
    wf = workflow_service.complete_step(db, workflow_id, step_name, user.actor, action.notes, action.auto_advance)
    log_action(user.actor, user.role, "complete_step", {"workflow_id": workflow_id, "step": step_name.value})
    if action.run_automation:
        wf = workflow_service.process_automated_steps(db, workflow_id, user.actor)
    return workflow_service.to_workflow_read(wf)


@app.post("/workflows/{workflow_id}/steps/{step_name}/skip", response_model=WorkflowRead)
def api_skip_step(
    reason_in: ReasonIn,
    step_name: StepName,
    workflow_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*WORKFLOW_ROLES)),
):
    wf = workflow_service.skip_step(db, workflow_id, step_name, user.actor, reason_in.reason)
    log_action(user.actor, user.role, "skip_step", {"workflow_id": workflow_id, "step": step_name.value})
    return workflow_service.to_workflow_read(wf)


@app.post("/workflows/{workflow_id}/steps/{step_name}/retry", response_model=WorkflowRead)
def api_retry_step(
    step_name: StepName,
    workflow_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*WORKFLOW_ROLES)),
):
    """Retry a failed automated step."""
    workflow_service.retry_step(db, workflow_id, step_name, user.actor)
    wf = workflow_service.process_automated_steps(db, workflow_id, user.actor)
    return workflow_service.to_workflow_read(wf)


@app.post("/workflows/{workflow_id}/process", response_model=WorkflowRead)
def api_process_workflow(
    workflow_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(*WORKFLOW_ROLES)),
):
    wf = workflow_service.process_automated_steps(db, workflow_id, user.actor)
    return workflow_service.to_workflow_read(wf)


@app.post("/workflows/{workflow_id}/cancel", response_model=WorkflowRead)
def api_cancel_workflow(
    reason_in: ReasonIn,
    workflow_id: int = Path(..., gt=0),
    db=Depends(get_db),
    user: UserContext = Depends(require_role(CLAIMS_MANAGER)),
):
    wf = workflow_service.cancel_workflow(db, workflow_id, user.actor, reason_in.reason)
    log_action(user.actor, user.role, "cancel_workflow", {"workflow_id": workflow_id, "reason": reason_in.reason})
    return workflow_service.to_workflow_read(wf)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
