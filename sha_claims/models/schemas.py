"""
Pydantic models and enums used throughout the SHA claims API.

These models define the shape of request and response bodies and enforce
data validation at the API boundary.  The enums are shared with the ORM
models so the database and the API agree on every status value.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ClaimStatus(str, Enum):
    """Lifecycle of a claim from the clinic's point of view."""
    DRAFT = "draft"
    READY_TO_SUBMIT = "ready_to_submit"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class ComplianceStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class ItemType(str, Enum):
    CONSULTATION = "consultation"
    MEDICATION = "medication"
    LAB_TEST = "lab_test"
    PROCEDURE = "procedure"
    OTHER = "other"


class DocumentType(str, Enum):
    LAB_RESULTS = "LAB_RESULTS"
    DISCHARGE_SUMMARY = "DISCHARGE_SUMMARY"
    PRESCRIPTION = "PRESCRIPTION"
    REFERRAL_LETTER = "REFERRAL_LETTER"
    MEDICAL_REPORT = "MEDICAL_REPORT"
    IMAGING_REPORT = "IMAGING_REPORT"
    CONSENT_FORM = "CONSENT_FORM"
    INSURANCE_CARD = "INSURANCE_CARD"
    IDENTIFICATION = "IDENTIFICATION"
    OTHER = "OTHER"


class InvoiceStatus(str, Enum):
    GENERATED = "generated"
    REVIEWED = "reviewed"
    PRINTED = "printed"
    SUBMITTED = "submitted"


class BatchType(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class BatchStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SubmissionType(str, Enum):
    SINGLE = "single"
    BATCH = "batch"


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRY = "retry"


class WorkflowStatus(str, Enum):
    """High level state of a claim processing workflow."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    """State of an individual workflow step."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class StepName(str, Enum):
    CLAIM_CREATION = "claim_creation"
    CLINICAL_REVIEW = "clinical_review"
    DOCUMENT_COLLECTION = "document_collection"
    COMPLIANCE_VERIFICATION = "compliance_verification"
    INVOICE_GENERATION = "invoice_generation"
    INVOICE_REVIEW = "invoice_review"
    INVOICE_PRINTING = "invoice_printing"
    CLAIM_SUBMISSION = "claim_submission"
    PAYMENT_TRACKING = "payment_tracking"


class QueueName(str, Enum):
    CLAIMS = "claims"
    INVENTORY = "inventory"
    NOTIFICATION = "notification"
    BACKUP = "backup"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------

class ClaimItemCreate(BaseModel):
    service_code: str = Field(..., min_length=1)
    service_description: str = Field(..., min_length=1)
    quantity: int = Field(1, gt=0)
    unit_price: float = Field(..., ge=0)
    item_type: ItemType = ItemType.OTHER


class ClaimItemRead(ClaimItemCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    claim_id: int
    total_price: float
    approved_price: Optional[float] = None
    created_at: datetime


class DocumentCreate(BaseModel):
    document_type: DocumentType
    file_name: str = Field(..., min_length=1)
    description: Optional[str] = Field(None, max_length=500)
    is_required: bool = True


class DocumentUpdate(BaseModel):
    description: Optional[str] = Field(None, max_length=500)
    is_required: Optional[bool] = None
    compliance_verified: Optional[bool] = None
    verification_notes: Optional[str] = Field(None, max_length=1000)
    sha_document_reference: Optional[str] = Field(None, max_length=100)


class DocumentRead(DocumentCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    claim_id: int
    compliance_verified: bool
    verification_notes: Optional[str] = None
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    sha_document_reference: Optional[str] = None
    uploaded_by: Optional[str] = None
    created_at: datetime


class ClaimBase(BaseModel):
    patient_name: str = Field(..., min_length=1)
    op_number: str = Field(..., min_length=1, description="Out-patient number of the patient")
    member_number: Optional[str] = Field(None, description="SHA beneficiary/member number")
    national_id: Optional[str] = None
    phone_number: Optional[str] = None
    visit_date: date
    primary_diagnosis_code: str = Field(..., min_length=1)
    primary_diagnosis_description: str = Field(..., min_length=1)
    secondary_diagnosis_codes: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class ClaimCreate(ClaimBase):
    """Request model for creating a new claim, optionally with its items."""
    claim_amount: float = Field(0, ge=0)
    items: List[ClaimItemCreate] = Field(default_factory=list)


class ClaimUpdate(BaseModel):
    patient_name: Optional[str] = None
    member_number: Optional[str] = None
    phone_number: Optional[str] = None
    primary_diagnosis_code: Optional[str] = None
    primary_diagnosis_description: Optional[str] = None
    secondary_diagnosis_codes: Optional[List[str]] = None
    claim_amount: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None
    status: Optional[ClaimStatus] = None


class ClaimRead(ClaimBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    claim_number: str
    claim_amount: float
    status: ClaimStatus
    compliance_status: ComplianceStatus
    provider_code: str
    provider_name: Optional[str] = None
    facility_level: Optional[str] = None
    batch_id: Optional[int] = None
    sha_reference: Optional[str] = None
    approved_amount: Optional[float] = None
    submission_date: Optional[datetime] = None
    approval_date: Optional[datetime] = None
    payment_date: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    last_reviewed_at: Optional[datetime] = None
    created_by: str
    created_at: datetime
    updated_at: datetime
    items: List[ClaimItemRead] = Field(default_factory=list)
    documents: List[DocumentRead] = Field(default_factory=list)


class ClaimPage(BaseModel):
    claims: List[ClaimRead]
    pagination: Pagination


class ComplianceCheck(BaseModel):
    claim_id: int
    compliant: bool
    issues: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    claim_id: int
    status: InvoiceStatus
    total_amount: float
    invoice_date: datetime
    due_date: datetime
    is_locked: bool
    print_count: int
    generated_by: str
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    printed_at: Optional[datetime] = None
    printed_by: Optional[str] = None
    submitted_at: Optional[datetime] = None
    submitted_by: Optional[str] = None
    created_at: datetime


class AuditTrailRead(BaseModel):
    id: int
    invoice_id: Optional[int] = None
    claim_id: Optional[int] = None
    action: str
    performed_by: str
    performed_at: datetime
    details: Dict[str, Any] = Field(default_factory=dict)


class BulkPrintRequest(BaseModel):
    invoice_ids: List[int] = Field(..., min_length=1)


class BulkPrintResult(BaseModel):
    total: int
    successful: int
    failed: int
    results: List[Dict[str, Any]]


class ComplianceReport(BaseModel):
    summary: Dict[str, int]
    details: List[Dict[str, Any]]


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

class BatchCreate(BaseModel):
    batch_type: BatchType
    batch_date: Optional[date] = None
    claim_ids: Optional[List[int]] = None


class BatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    batch_number: str
    batch_type: BatchType
    batch_date: date
    total_claims: int
    total_amount: float
    status: BatchStatus
    submission_date: Optional[datetime] = None
    completion_date: Optional[datetime] = None
    sha_batch_reference: Optional[str] = None
    invoice_generated: bool
    printed_invoices: bool
    printed_at: Optional[datetime] = None
    printed_by: Optional[str] = None
    created_by: str
    created_at: datetime
    updated_at: datetime


class BatchDetail(BaseModel):
    batch: BatchRead
    claims: List[ClaimRead]


class BatchPage(BaseModel):
    batches: List[BatchRead]
    pagination: Pagination


class SubmissionResult(BaseModel):
    """Outcome of a call to the SHA API."""
    success: bool
    status: int
    data: Optional[Any] = None
    error: Optional[Any] = None
    reference: Optional[str] = None


class QueuedSubmission(BaseModel):
    job_id: int
    queue: QueueName
    name: str


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------

class StepRead(BaseModel):
    id: int
    workflow_id: int
    step_name: StepName
    step_order: int
    status: StepStatus
    required: bool
    automated: bool
    estimated_duration_minutes: int
    actual_duration_minutes: Optional[float] = None
    assigned_to: Optional[str] = None
    completed_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None
    prerequisites: List[StepName] = Field(default_factory=list)
    next_steps: List[StepName] = Field(default_factory=list)


class ActivityRead(BaseModel):
    id: int
    workflow_id: int
    step_name: Optional[StepName] = None
    action: str
    performed_by: str
    performed_at: datetime
    details: Dict[str, Any] = Field(default_factory=dict)


class WorkflowCreate(BaseModel):
    claim_id: int = Field(..., gt=0)
    run_automation: bool = True


class StepAction(BaseModel):
    notes: Optional[str] = None
    auto_advance: bool = True
    run_automation: bool = Field(True, description="Execute automated steps reached after this one")


class ReasonIn(BaseModel):
    reason: Optional[str] = None


class WorkflowRead(BaseModel):
    """Response model for reading workflow details."""

    id: int
    claim_id: int
    invoice_id: Optional[int] = None
    workflow_type: str
    current_step: Optional[StepName] = None
    overall_status: WorkflowStatus
    initiated_by: str
    completed_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    steps: List[StepRead] = Field(default_factory=list)
    activity: List[ActivityRead] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class JobCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Job name, e.g. 'submit_single_claim'")
    data: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = Field(3, ge=1, le=20)
    backoff_seconds: float = Field(60, ge=0)
    delay_seconds: float = Field(0, ge=0)


class JobRead(BaseModel):
    id: int
    queue: QueueName
    name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    state: JobState
    attempts_made: int
    max_attempts: int
    run_at: datetime
    result: Optional[Any] = None
    last_error: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None
