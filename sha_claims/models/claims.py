"""
SQLAlchemy ORM models for SHA claims, their items, supporting documents,
batches, invoices and the submission/payment bookkeeping around them.
"""

from __future__ import annotations

import json
from typing import List

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from sha_claims.models.database import Base, utcnow
from sha_claims.models.schemas import (
    BatchStatus,
    BatchType,
    ClaimStatus,
    ComplianceStatus,
    DocumentType,
    InvoiceStatus,
    ItemType,
    SubmissionStatus,
    SubmissionType,
)


class Claim(Base):
    __tablename__ = "sha_claims"

    id = Column(Integer, primary_key=True, index=True)
    claim_number = Column(String, nullable=False, unique=True, index=True)

    # Patient details are copied onto the claim at creation time
    patient_name = Column(String, nullable=False)
    op_number = Column(String, nullable=False, index=True)
    member_number = Column(String, nullable=True)
    national_id = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    visit_date = Column(Date, nullable=False)

    primary_diagnosis_code = Column(String, nullable=False)
    primary_diagnosis_description = Column(Text, nullable=False)
    secondary_diagnosis_codes_json = Column(Text, nullable=False, default="[]")

    provider_code = Column(String, nullable=False)
    provider_name = Column(String, nullable=True)
    facility_level = Column(String, nullable=True)

    claim_amount = Column(Float, nullable=False, default=0.0)
    approved_amount = Column(Float, nullable=True)
    status = Column(SAEnum(ClaimStatus), nullable=False, default=ClaimStatus.DRAFT, index=True)
    compliance_status = Column(SAEnum(ComplianceStatus), nullable=False, default=ComplianceStatus.PENDING)

    batch_id = Column(Integer, ForeignKey("sha_claim_batches.id"), nullable=True, index=True)
    sha_reference = Column(String, nullable=True, index=True)
    submission_date = Column(DateTime, nullable=True)
    approval_date = Column(DateTime, nullable=True)
    payment_date = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    last_reviewed_at = Column(DateTime, nullable=True)

    notes = Column(Text, nullable=True)
    created_by = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    items = relationship("ClaimItem", back_populates="claim", cascade="all, delete-orphan", order_by="ClaimItem.id")
    documents = relationship(
        "ClaimDocument", back_populates="claim", cascade="all, delete-orphan", order_by="ClaimDocument.id"
    )
    batch = relationship("ClaimBatch", back_populates="claims")
    invoice = relationship("Invoice", back_populates="claim", uselist=False)

    @property
    def secondary_diagnosis_codes(self) -> List[str]:
        return json.loads(self.secondary_diagnosis_codes_json or "[]")

    @secondary_diagnosis_codes.setter
    def secondary_diagnosis_codes(self, codes: List[str]) -> None:
        self.secondary_diagnosis_codes_json = json.dumps(list(codes or []))

    def update_timestamp(self) -> None:
        self.updated_at = utcnow()


class ClaimItem(Base):
    __tablename__ = "sha_claim_items"

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer, ForeignKey("sha_claims.id"), nullable=False, index=True)
    service_code = Column(String, nullable=False)
    service_description = Column(Text, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Float, nullable=False, default=0.0)
    total_price = Column(Float, nullable=False, default=0.0)
    approved_price = Column(Float, nullable=True)
    item_type = Column(SAEnum(ItemType), nullable=False, default=ItemType.OTHER)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    claim = relationship("Claim", back_populates="items")


class ClaimDocument(Base):
    """Metadata of a document attached to a claim.  The file itself lives in external storage."""

    __tablename__ = "sha_document_attachments"

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer, ForeignKey("sha_claims.id"), nullable=False, index=True)
    document_type = Column(SAEnum(DocumentType), nullable=False)
    file_name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_required = Column(Boolean, nullable=False, default=True)
    compliance_verified = Column(Boolean, nullable=False, default=False)
    verification_notes = Column(Text, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    verified_by = Column(String, nullable=True)
    sha_document_reference = Column(String, nullable=True)
    uploaded_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    claim = relationship("Claim", back_populates="documents")

    def update_timestamp(self) -> None:
        self.updated_at = utcnow()


class ClaimBatch(Base):
    __tablename__ = "sha_claim_batches"

    id = Column(Integer, primary_key=True, index=True)
    batch_number = Column(String, nullable=False, unique=True, index=True)
    batch_type = Column(SAEnum(BatchType), nullable=False)
    batch_date = Column(Date, nullable=False)
    total_claims = Column(Integer, nullable=False, default=0)
    total_amount = Column(Float, nullable=False, default=0.0)
    status = Column(SAEnum(BatchStatus), nullable=False, default=BatchStatus.DRAFT, index=True)
    submission_date = Column(DateTime, nullable=True)
    completion_date = Column(DateTime, nullable=True)
    sha_batch_reference = Column(String, nullable=True)
    invoice_generated = Column(Boolean, nullable=False, default=False)
    printed_invoices = Column(Boolean, nullable=False, default=False)
    printed_at = Column(DateTime, nullable=True)
    printed_by = Column(String, nullable=True)
    created_by = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    claims = relationship("Claim", back_populates="batch", order_by="Claim.created_at")

    def update_timestamp(self) -> None:
        self.updated_at = utcnow()


class Invoice(Base):
    __tablename__ = "sha_invoices"

    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String, nullable=False, unique=True, index=True)
    claim_id = Column(Integer, ForeignKey("sha_claims.id"), nullable=False, unique=True)
    status = Column(SAEnum(InvoiceStatus), nullable=False, default=InvoiceStatus.GENERATED, index=True)
    total_amount = Column(Float, nullable=False, default=0.0)
    invoice_date = Column(DateTime, default=utcnow, nullable=False)
    due_date = Column(DateTime, nullable=False)
    # Locked once the claim has been submitted to SHA
    is_locked = Column(Boolean, nullable=False, default=False)
    print_count = Column(Integer, nullable=False, default=0)
    generated_by = Column(String, nullable=False)
    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String, nullable=True)
    printed_at = Column(DateTime, nullable=True)
    printed_by = Column(String, nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    submitted_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    claim = relationship("Claim", back_populates="invoice")

    def update_timestamp(self) -> None:
        self.updated_at = utcnow()


class SubmissionLog(Base):
    __tablename__ = "claim_submission_logs"

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer, ForeignKey("sha_claims.id"), nullable=True, index=True)
    batch_id = Column(Integer, ForeignKey("sha_claim_batches.id"), nullable=True, index=True)
    submission_type = Column(SAEnum(SubmissionType), nullable=False)
    request_payload = Column(Text, nullable=False, default="{}")
    response_payload = Column(Text, nullable=True)
    status = Column(SAEnum(SubmissionStatus), nullable=False, default=SubmissionStatus.PENDING)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class PaymentTracking(Base):
    __tablename__ = "sha_payment_tracking"

    id = Column(Integer, primary_key=True, index=True)
    claim_id = Column(Integer, ForeignKey("sha_claims.id"), nullable=False, index=True)
    invoice_id = Column(Integer, ForeignKey("sha_invoices.id"), nullable=True)
    tracking_started_at = Column(DateTime, default=utcnow, nullable=False)
    auto_check_enabled = Column(Boolean, nullable=False, default=True)
    last_checked_at = Column(DateTime, nullable=True)
    next_check_at = Column(DateTime, nullable=True)
    last_sha_status = Column(String, nullable=True)
    closed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class AuditTrail(Base):
    __tablename__ = "sha_audit_trail"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("sha_invoices.id"), nullable=True, index=True)
    claim_id = Column(Integer, ForeignKey("sha_claims.id"), nullable=True, index=True)
    action = Column(String, nullable=False)
    performed_by = Column(String, nullable=False)
    performed_at = Column(DateTime, default=utcnow, nullable=False)
    details = Column(Text, nullable=False, default="{}")
