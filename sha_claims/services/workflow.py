"""
Claim processing workflow engine.

This module defines SQLAlchemy ORM models for workflow instances, their steps
and the activity log, and provides high level functions to drive them.  Every
claim gets one `SHA_CLAIM_PROCESSING` instance made of the nine steps in
`STEP_DEFINITIONS`.  Steps run strictly in order: a step can only be started
or completed once all of its prerequisites are completed (or skipped).
Manual steps are completed by staff; automated steps are executed by
`process_automated_steps`, which stops at the first manual step or failure.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Session, relationship

from sha_claims.models import database
from sha_claims.models.claims import Claim, PaymentTracking
from sha_claims.models.database import utcnow
from sha_claims.models.schemas import (
    ActivityRead,
    ClaimStatus,
    ComplianceStatus,
    StepName,
    StepRead,
    StepStatus,
    WorkflowRead,
    WorkflowStatus,
)
from sha_claims.services.claims import compliance_checklist, document_issues
from sha_claims.services.errors import ConflictError, InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)

WORKFLOW_TYPE = "SHA_CLAIM_PROCESSING"
SYSTEM_USER = "system"
PAYMENT_CHECK_INTERVAL = timedelta(hours=24)

DONE_STATUSES = (StepStatus.COMPLETED, StepStatus.SKIPPED)


@dataclass(frozen=True)
class StepDefinition:
    name: StepName
    order: int
    required: bool
    automated: bool
    estimated_minutes: int
    prerequisites: Tuple[StepName, ...]
    next_steps: Tuple[StepName, ...]


STEP_DEFINITIONS: Tuple[StepDefinition, ...] = (
    StepDefinition(StepName.CLAIM_CREATION, 1, True, False, 15, (), (StepName.CLINICAL_REVIEW,)),
    StepDefinition(
        StepName.CLINICAL_REVIEW, 2, True, False, 30, (StepName.CLAIM_CREATION,), (StepName.DOCUMENT_COLLECTION,)
    ),
    StepDefinition(
        StepName.DOCUMENT_COLLECTION,
        3,
        True,
        False,
        20,
        (StepName.CLINICAL_REVIEW,),
        (StepName.COMPLIANCE_VERIFICATION,),
    ),
    StepDefinition(
        StepName.COMPLIANCE_VERIFICATION,
        4,
        True,
        True,
        5,
        (StepName.DOCUMENT_COLLECTION,),
        (StepName.INVOICE_GENERATION,),
    ),
    StepDefinition(
        StepName.INVOICE_GENERATION,
        5,
        True,
        True,
        2,
        (StepName.COMPLIANCE_VERIFICATION,),
        (StepName.INVOICE_REVIEW,),
    ),
    StepDefinition(
        StepName.INVOICE_REVIEW, 6, True, False, 15, (StepName.INVOICE_GENERATION,), (StepName.INVOICE_PRINTING,)
    ),
    StepDefinition(
        StepName.INVOICE_PRINTING, 7, True, False, 5, (StepName.INVOICE_REVIEW,), (StepName.CLAIM_SUBMISSION,)
    ),
    StepDefinition(
        StepName.CLAIM_SUBMISSION, 8, True, False, 10, (StepName.INVOICE_PRINTING,), (StepName.PAYMENT_TRACKING,)
    ),
    StepDefinition(StepName.PAYMENT_TRACKING, 9, False, True, 1, (StepName.CLAIM_SUBMISSION,), ()),
)


class WorkflowInstance(database.Base):
    __tablename__ = "sha_workflow_instances"
    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer, ForeignKey("sha_claims.id"), nullable=False, index=True)
    invoice_id = Column(Integer, ForeignKey("sha_invoices.id"), nullable=True)
    workflow_type = Column(String, nullable=False, default=WORKFLOW_TYPE)
    current_step = Column(SAEnum(StepName), nullable=True)
    overall_status = Column(SAEnum(WorkflowStatus), nullable=False, default=WorkflowStatus.NOT_STARTED, index=True)
    initiated_by = Column(String, nullable=False)
    completed_by = Column(String, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    claim = relationship(Claim)
    steps = relationship(
        "WorkflowStep", back_populates="workflow", cascade="all, delete-orphan", order_by="WorkflowStep.step_order"
    )
    activity = relationship(
        "WorkflowActivity", back_populates="workflow", cascade="all, delete-orphan", order_by="WorkflowActivity.id"
    )

    def update_timestamp(self) -> None:
        self.updated_at = utcnow()


class WorkflowStep(database.Base):
    __tablename__ = "sha_workflow_steps"
    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("sha_workflow_instances.id"), nullable=False, index=True)
    step_name = Column(SAEnum(StepName), nullable=False)
    step_order = Column(Integer, nullable=False)
    status = Column(SAEnum(StepStatus), nullable=False, default=StepStatus.PENDING)
    required = Column(Boolean, nullable=False, default=True)
    automated = Column(Boolean, nullable=False, default=False)
    estimated_duration_minutes = Column(Integer, nullable=False, default=0)
    actual_duration_minutes = Column(Float, nullable=True)
    assigned_to = Column(String, nullable=True)
    completed_by = Column(String, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    prerequisites = Column(Text, nullable=False, default="[]")
    next_steps = Column(Text, nullable=False, default="[]")
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    workflow = relationship("WorkflowInstance", back_populates="steps")

    @property
    def prerequisite_names(self) -> List[StepName]:
        return [StepName(name) for name in json.loads(self.prerequisites or "[]")]

    @property
    def next_step_names(self) -> List[StepName]:
        return [StepName(name) for name in json.loads(self.next_steps or "[]")]

    def update_timestamp(self) -> None:
        self.updated_at = utcnow()


class WorkflowActivity(database.Base):
    __tablename__ = "sha_workflow_activity_log"
    id = Column(Integer, primary_key=True, index=True)
    workflow_id = Column(Integer, ForeignKey("sha_workflow_instances.id"), nullable=False, index=True)
    step_name = Column(SAEnum(StepName), nullable=True)
    action = Column(String, nullable=False)
    performed_by = Column(String, nullable=False)
    performed_at = Column(DateTime, default=utcnow, nullable=False)
    details = Column(Text, nullable=False, default="{}")

    workflow = relationship("WorkflowInstance", back_populates="activity")


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _log_activity(
    db: Session,
    workflow: WorkflowInstance,
    step_name: Optional[StepName],
    action: str,
    performed_by: str,
    details: Optional[dict] = None,
) -> None:
    db.add(
        WorkflowActivity(
            workflow_id=workflow.id,
            step_name=step_name,
            action=action,
            performed_by=performed_by,
            details=json.dumps(details or {}, default=str),
        )
    )


def _find_step(workflow: WorkflowInstance, step_name: StepName) -> WorkflowStep:
    for step in workflow.steps:
        if step.step_name == step_name:
            return step
    raise NotFoundError(f"Step {step_name.value} not found in workflow {workflow.id}")


def _prerequisites_met(workflow: WorkflowInstance, step: WorkflowStep) -> bool:
    for name in step.prerequisite_names:
        if _find_step(workflow, name).status not in DONE_STATUSES:
            return False
    return True


def _require_active(workflow: WorkflowInstance) -> None:
    if workflow.overall_status != WorkflowStatus.IN_PROGRESS:
        raise InvalidStateError(f"Workflow {workflow.id} is {workflow.overall_status.value}")


def _start_step(db: Session, workflow: WorkflowInstance, step: WorkflowStep, assigned_to: str) -> None:
    now = utcnow()
    step.status = StepStatus.IN_PROGRESS
    step.assigned_to = assigned_to
    step.started_at = now
    step.update_timestamp()
    workflow.current_step = step.step_name
    workflow.update_timestamp()
    _log_activity(db, workflow, step.step_name, "STEP_STARTED", assigned_to, {"started_at": now})


def _complete_workflow(db: Session, workflow: WorkflowInstance, completed_by: str) -> None:
    now = utcnow()
    workflow.overall_status = WorkflowStatus.COMPLETED
    workflow.completed_at = now
    workflow.completed_by = completed_by
    workflow.current_step = None
    workflow.update_timestamp()
    _log_activity(db, workflow, None, "WORKFLOW_COMPLETED", completed_by, {"completion_time": now})
    logger.info("Workflow %s for claim %s completed", workflow.id, workflow.claim_id)


def _advance(db: Session, workflow: WorkflowInstance, finished: WorkflowStep, performed_by: str) -> None:
    """Start the next pending step after `finished`, or close the workflow."""
    pending = [s for s in workflow.steps if s.status == StepStatus.PENDING and s.step_order > finished.step_order]
    if not pending:
        if all(s.status in DONE_STATUSES for s in workflow.steps):
            _complete_workflow(db, workflow, performed_by)
        return
    next_step = pending[0]
    if not _prerequisites_met(workflow, next_step):
        logger.warning(
            "Workflow %s: %s has unmet prerequisites, not advancing", workflow.id, next_step.step_name.value
        )
        return
    _start_step(db, workflow, next_step, performed_by)


def _finish_step(
    db: Session,
    workflow: WorkflowInstance,
    step: WorkflowStep,
    status: StepStatus,
    performed_by: str,
    notes: Optional[str],
) -> None:
    _require_active(workflow)
    if step.status in DONE_STATUSES:
        raise InvalidStateError(f"Step {step.step_name.value} is already {step.status.value}")
    if not _prerequisites_met(workflow, step):
        raise InvalidStateError(f"Prerequisites of {step.step_name.value} are not complete")
    now = utcnow()
    started = step.started_at or now
    step.status = status
    step.completed_by = performed_by
    step.completed_at = now
    step.started_at = started
    step.actual_duration_minutes = round((now - started).total_seconds() / 60, 2)
    step.notes = notes
    step.update_timestamp()
    workflow.update_timestamp()
    action = "STEP_COMPLETED" if status == StepStatus.COMPLETED else "STEP_SKIPPED"
    _log_activity(db, workflow, step.step_name, action, performed_by, {"notes": notes, "completed_at": now})


# ---------------------------------------------------------------------------
# Automated steps
# ---------------------------------------------------------------------------

def _execute_compliance_verification(db: Session, workflow: WorkflowInstance) -> str:
    claim = workflow.claim
    issues = document_issues(claim) + compliance_checklist(claim)
    claim.last_reviewed_at = utcnow()
    if issues:
        claim.compliance_status = ComplianceStatus.REJECTED
        claim.update_timestamp()
        # The rejection is kept even though the step itself fails.
        db.commit()
        raise InvalidStateError("; ".join(issues))
    claim.compliance_status = ComplianceStatus.VERIFIED
    if claim.status == ClaimStatus.DRAFT:
        claim.status = ClaimStatus.READY_TO_SUBMIT
    claim.update_timestamp()
    return "Compliance verified"


def _execute_invoice_generation(db: Session, workflow: WorkflowInstance) -> str:
    from sha_claims.services import invoices

    invoice = invoices.generate_invoice_for_claim(db, workflow.claim_id, SYSTEM_USER, advance_workflow=False)
    workflow.invoice_id = invoice.id
    workflow.update_timestamp()
    return f"Invoice {invoice.invoice_number} generated"


def _execute_payment_tracking(db: Session, workflow: WorkflowInstance) -> str:
    tracking = (
        db.query(PaymentTracking)
        .filter(PaymentTracking.claim_id == workflow.claim_id, PaymentTracking.closed_at.is_(None))
        .first()
    )
    if tracking is None:
        now = utcnow()
        tracking = PaymentTracking(
            claim_id=workflow.claim_id,
            invoice_id=workflow.invoice_id,
            tracking_started_at=now,
            auto_check_enabled=True,
            next_check_at=now + PAYMENT_CHECK_INTERVAL,
        )
        db.add(tracking)
    return "Payment tracking enabled"


AUTOMATED_EXECUTORS: Dict[StepName, Callable[[Session, WorkflowInstance], str]] = {
    StepName.COMPLIANCE_VERIFICATION: _execute_compliance_verification,
    StepName.INVOICE_GENERATION: _execute_invoice_generation,
    StepName.PAYMENT_TRACKING: _execute_payment_tracking,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_workflow(db: Session, workflow_id: int) -> Optional[WorkflowInstance]:
    """Retrieve a workflow by ID."""
    return db.query(WorkflowInstance).filter(WorkflowInstance.id == workflow_id).first()


def require_workflow(db: Session, workflow_id: int) -> WorkflowInstance:
    workflow = get_workflow(db, workflow_id)
    if workflow is None:
        raise NotFoundError(f"Workflow {workflow_id} not found")
    return workflow


def active_workflow_for_claim(db: Session, claim_id: int) -> Optional[WorkflowInstance]:
    return (
        db.query(WorkflowInstance)
        .filter(
            WorkflowInstance.claim_id == claim_id,
            WorkflowInstance.overall_status == WorkflowStatus.IN_PROGRESS,
        )
        .first()
    )


def list_workflows(
    db: Session,
    status: Optional[WorkflowStatus] = None,
    claim_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> List[WorkflowInstance]:
    query = db.query(WorkflowInstance)
    if status is not None:
        query = query.filter(WorkflowInstance.overall_status == status)
    if claim_id is not None:
        query = query.filter(WorkflowInstance.claim_id == claim_id)
    if date_from is not None:
        query = query.filter(WorkflowInstance.created_at >= date_from)
    if date_to is not None:
        query = query.filter(WorkflowInstance.created_at <= date_to)
    return query.order_by(WorkflowInstance.created_at.desc(), WorkflowInstance.id.desc()).all()


def initialize_workflow(db: Session, claim_id: int, initiated_by: str) -> WorkflowInstance:
    """Create the workflow for a claim and start its first step."""
    claim = db.query(Claim).filter(Claim.id == claim_id).first()
    if claim is None:
        raise NotFoundError(f"Claim {claim_id} not found")
    if active_workflow_for_claim(db, claim_id) is not None:
        raise ConflictError(f"Claim {claim_id} already has an active workflow")

    workflow = WorkflowInstance(
        claim_id=claim_id,
        invoice_id=claim.invoice.id if claim.invoice else None,
        workflow_type=WORKFLOW_TYPE,
        current_step=StepName.CLAIM_CREATION,
        overall_status=WorkflowStatus.IN_PROGRESS,
        initiated_by=initiated_by,
    )
    db.add(workflow)
    db.flush()  # flush to assign an ID before adding steps
    for definition in STEP_DEFINITIONS:
        workflow.steps.append(
            WorkflowStep(
                workflow_id=workflow.id,
                step_name=definition.name,
                step_order=definition.order,
                status=StepStatus.PENDING,
                required=definition.required,
                automated=definition.automated,
                estimated_duration_minutes=definition.estimated_minutes,
                prerequisites=json.dumps([p.value for p in definition.prerequisites]),
                next_steps=json.dumps([n.value for n in definition.next_steps]),
            )
        )
    _log_activity(db, workflow, None, "WORKFLOW_INITIATED", initiated_by, {"claim_number": claim.claim_number})
    _start_step(db, workflow, workflow.steps[0], initiated_by)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(workflow)
    logger.info("Initialised workflow %s for claim %s", workflow.id, claim.claim_number)
    return workflow


def complete_step(
    db: Session,
    workflow_id: int,
    step_name: StepName,
    completed_by: str,
    notes: Optional[str] = None,
    auto_advance: bool = True,
) -> WorkflowInstance:
    """Complete a step and, by default, start the next one."""
    workflow = require_workflow(db, workflow_id)
    step = _find_step(workflow, step_name)
    _finish_step(db, workflow, step, StepStatus.COMPLETED, completed_by, notes)
    if auto_advance:
        _advance(db, workflow, step, completed_by)
    elif all(s.status in DONE_STATUSES for s in workflow.steps):
        _complete_workflow(db, workflow, completed_by)
    db.commit()
    db.refresh(workflow)
    return workflow


def skip_step(
    db: Session,
    workflow_id: int,
    step_name: StepName,
    skipped_by: str,
    reason: Optional[str] = None,
) -> WorkflowInstance:
    """Skip an optional step and advance past it."""
    workflow = require_workflow(db, workflow_id)
    step = _find_step(workflow, step_name)
    if step.required:
        raise InvalidStateError(f"Step {step_name.value} is required and cannot be skipped")
    _finish_step(db, workflow, step, StepStatus.SKIPPED, skipped_by, reason)
    _advance(db, workflow, step, skipped_by)
    db.commit()
    db.refresh(workflow)
    return workflow


def retry_step(db: Session, workflow_id: int, step_name: StepName, triggered_by: str) -> WorkflowInstance:
    """Put a failed step back in progress so it can be executed again."""
    workflow = require_workflow(db, workflow_id)
    _require_active(workflow)
    step = _find_step(workflow, step_name)
    if step.status != StepStatus.FAILED:
        raise InvalidStateError(f"Step {step_name.value} is {step.status.value}, only failed steps can be retried")
    previous_error = step.notes
    step.notes = None
    _start_step(db, workflow, step, triggered_by)
    _log_activity(db, workflow, step_name, "STEP_RETRIED", triggered_by, {"previous_error": previous_error})
    db.commit()
    db.refresh(workflow)
    return workflow


def _fail_step(db: Session, workflow: WorkflowInstance, step: WorkflowStep, error: str, triggered_by: str) -> None:
    step.status = StepStatus.FAILED
    step.notes = error
    step.update_timestamp()
    workflow.update_timestamp()
    _log_activity(db, workflow, step.step_name, "STEP_FAILED", triggered_by, {"error": error})


def process_automated_steps(db: Session, workflow_id: int, triggered_by: str = SYSTEM_USER) -> WorkflowInstance:
    """Run automated steps from the current step onwards.

    Stops at the first manual step, at the end of the workflow, or at the
    first failure.  A failing step is marked `failed` with the error message
    as its notes and can be retried with `retry_step`.
    """
    workflow = require_workflow(db, workflow_id)
    for _ in range(len(STEP_DEFINITIONS)):
        if workflow.overall_status != WorkflowStatus.IN_PROGRESS or workflow.current_step is None:
            break
        step = _find_step(workflow, workflow.current_step)
        if not step.automated or step.status != StepStatus.IN_PROGRESS:
            break
        if not _prerequisites_met(workflow, step):
            break

        step_name = step.step_name
        executor = AUTOMATED_EXECUTORS.get(step_name)
        try:
            if executor is None:
                raise InvalidStateError(f"Unknown automated step: {step_name.value}")
            note = executor(db, workflow)
        except Exception as exc:
            logger.exception("Automated step %s failed for workflow %s", step_name.value, workflow_id)
            db.rollback()
            workflow = require_workflow(db, workflow_id)
            _fail_step(db, workflow, _find_step(workflow, step_name), str(exc), triggered_by)
            db.commit()
            break
        workflow = complete_step(db, workflow_id, step_name, SYSTEM_USER, note or "Automated execution completed")
    db.refresh(workflow)
    return workflow


def advance_on_event(
    db: Session,
    claim_id: int,
    step_name: StepName,
    performed_by: str,
    notes: Optional[str] = None,
) -> Optional[WorkflowInstance]:
    """Complete `step_name` if it is where the claim's active workflow currently stands.

    Called by the invoice and submission services so that actions taken
    through their endpoints move the workflow along too.
    """
    workflow = active_workflow_for_claim(db, claim_id)
    if workflow is None or workflow.current_step != step_name:
        return None
    step = _find_step(workflow, step_name)
    if step.status in DONE_STATUSES or not _prerequisites_met(workflow, step):
        return None
    workflow = complete_step(db, workflow.id, step_name, performed_by, notes)
    return process_automated_steps(db, workflow.id, performed_by)


def cancel_workflow(db: Session, workflow_id: int, cancelled_by: str, reason: Optional[str] = None) -> WorkflowInstance:
    workflow = require_workflow(db, workflow_id)
    _require_active(workflow)
    workflow.overall_status = WorkflowStatus.CANCELLED
    workflow.update_timestamp()
    _log_activity(db, workflow, workflow.current_step, "WORKFLOW_CANCELLED", cancelled_by, {"reason": reason})
    db.commit()
    db.refresh(workflow)
    logger.info("Workflow %s cancelled by %s", workflow_id, cancelled_by)
    return workflow


def workflow_statistics(
    db: Session,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> dict:
    """Aggregate workflow and step outcomes over an optional creation window."""
    workflows = list_workflows(db, date_from=date_from, date_to=date_to)
    now = utcnow()

    overall: Dict[str, dict] = {}
    for wf in workflows:
        end = wf.completed_at or now
        entry = overall.setdefault(wf.overall_status.value, {"count": 0, "hours": []})
        entry["count"] += 1
        entry["hours"].append((end - wf.created_at).total_seconds() / 3600)

    steps: Dict[Tuple[str, str], dict] = {}
    for wf in workflows:
        for step in wf.steps:
            key = (step.step_name.value, step.status.value)
            entry = steps.setdefault(key, {"count": 0, "actual": [], "estimated": []})
            entry["count"] += 1
            entry["estimated"].append(step.estimated_duration_minutes)
            if step.actual_duration_minutes is not None:
                entry["actual"].append(step.actual_duration_minutes)

    def _avg(values: List[float]) -> Optional[float]:
        return round(sum(values) / len(values), 2) if values else None

    def _count(status: WorkflowStatus) -> int:
        return overall.get(status.value, {}).get("count", 0)

    return {
        "overall": [
            {"overall_status": status, "count": e["count"], "avg_duration_hours": _avg(e["hours"])}
            for status, e in sorted(overall.items())
        ],
        "step_breakdown": [
            {
                "step_name": name,
                "status": status,
                "count": e["count"],
                "avg_duration_minutes": _avg(e["actual"]),
                "estimated_duration_minutes": _avg(e["estimated"]),
            }
            for (name, status), e in sorted(steps.items())
        ],
        "summary": {
            "total_workflows": len(workflows),
            "completed_workflows": _count(WorkflowStatus.COMPLETED),
            "in_progress_workflows": _count(WorkflowStatus.IN_PROGRESS),
            "failed_workflows": _count(WorkflowStatus.FAILED),
        },
    }


def to_workflow_read(workflow: WorkflowInstance) -> WorkflowRead:
    """Convert an ORM workflow to a Pydantic response model."""
    steps: List[StepRead] = [
        StepRead(
            id=s.id,
            workflow_id=s.workflow_id,
            step_name=s.step_name,
            step_order=s.step_order,
            status=s.status,
            required=s.required,
            automated=s.automated,
            estimated_duration_minutes=s.estimated_duration_minutes,
            actual_duration_minutes=s.actual_duration_minutes,
            assigned_to=s.assigned_to,
            completed_by=s.completed_by,
            started_at=s.started_at,
            completed_at=s.completed_at,
            notes=s.notes,
            prerequisites=s.prerequisite_names,
            next_steps=s.next_step_names,
        )
        for s in workflow.steps
    ]
    activity: List[ActivityRead] = [
        ActivityRead(
            id=a.id,
            workflow_id=a.workflow_id,
            step_name=a.step_name,
            action=a.action,
            performed_by=a.performed_by,
            performed_at=a.performed_at,
            details=json.loads(a.details),
        )
        for a in workflow.activity
    ]
    return WorkflowRead(
        id=workflow.id,
        claim_id=workflow.claim_id,
        invoice_id=workflow.invoice_id,
        workflow_type=workflow.workflow_type,
        current_step=workflow.current_step,
        overall_status=workflow.overall_status,
        initiated_by=workflow.initiated_by,
        completed_by=workflow.completed_by,
        completed_at=workflow.completed_at,
        created_at=workflow.created_at,
        updated_at=workflow.updated_at,
        steps=steps,
        activity=activity,
    )
