from datetime import timedelta

import pytest

from sha_claims.models.claims import AuditTrail
from sha_claims.models.database import utcnow
from sha_claims.models.schemas import BatchCreate, BatchStatus, BatchType, ClaimStatus, InvoiceStatus
from sha_claims.services import batches as batch_service
from sha_claims.services import invoices as invoice_service
from sha_claims.services.errors import InvalidStateError, NotFoundError


def test_invoice_requires_a_ready_claim(db, make_claim):
    claim = make_claim()
    with pytest.raises(InvalidStateError):
        invoice_service.generate_invoice_for_claim(db, claim.id, "manager")
    with pytest.raises(NotFoundError):
        invoice_service.generate_invoice_for_claim(db, 404, "manager")


def test_generate_invoice_is_idempotent(db, make_ready_claim):
    claim = make_ready_claim()
    invoice = invoice_service.generate_invoice_for_claim(db, claim.id, "manager")

    assert invoice.invoice_number == f"SHA-INV-{utcnow():%Y%m}-000001"
    assert invoice.status == InvoiceStatus.GENERATED
    assert invoice.total_amount == claim.claim_amount
    assert invoice.due_date - invoice.invoice_date == timedelta(days=30)

    again = invoice_service.generate_invoice_for_claim(db, claim.id, "manager")
    assert again.id == invoice.id
    assert db.query(AuditTrail).filter(AuditTrail.action == "INVOICE_GENERATED").count() == 1


def test_review_and_print_are_audited(db, make_ready_claim):
    invoice = invoice_service.generate_invoice_for_claim(db, make_ready_claim().id, "manager")
    invoice = invoice_service.mark_reviewed(db, invoice.id, "clinician")
    assert invoice.status == InvoiceStatus.REVIEWED
    assert invoice.reviewed_by == "clinician"

    invoice_service.mark_printed(db, invoice.id, "manager")
    invoice = invoice_service.mark_printed(db, invoice.id, "manager")
    assert invoice.status == InvoiceStatus.PRINTED
    assert invoice.print_count == 2

    trail = invoice_service.audit_trail(db, invoice.id)
    assert [e.action for e in trail] == [
        "INVOICE_PRINTED",
        "INVOICE_PRINTED",
        "INVOICE_REVIEWED",
        "INVOICE_GENERATED",
    ]
    assert trail[0].details == {"print_count": 2}


def test_locked_invoice_cannot_be_printed(db, make_ready_claim):
    claim = make_ready_claim()
    invoice = invoice_service.generate_invoice_for_claim(db, claim.id, "manager")
    invoice_service.lock_for_submission(db, claim, "manager")
    db.commit()

    with pytest.raises(InvalidStateError):
        invoice_service.mark_printed(db, invoice.id, "manager")
    assert invoice_service.submitted_invoices(db)[0].id == invoice.id


def test_bulk_print_reports_each_invoice(db, make_ready_claim):
    first = invoice_service.generate_invoice_for_claim(db, make_ready_claim().id, "manager")
    locked_claim = make_ready_claim(op_number="OP-0002")
    locked = invoice_service.generate_invoice_for_claim(db, locked_claim.id, "manager")
    invoice_service.lock_for_submission(db, locked_claim, "manager")
    db.commit()

    result = invoice_service.bulk_print(db, [first.id, locked.id, 999], "manager")
    assert result["total"] == 3
    assert result["successful"] == 1
    assert result["failed"] == 2
    assert [r["success"] for r in result["results"]] == [True, False, False]


def test_ready_for_review_and_printing(db, make_ready_claim):
    invoice = invoice_service.generate_invoice_for_claim(db, make_ready_claim().id, "manager")
    assert [i.id for i in invoice_service.invoices_ready_for_review(db)] == [invoice.id]
    assert [i.id for i in invoice_service.invoices_ready_for_printing(db, "weekly")] == [invoice.id]
    with pytest.raises(InvalidStateError):
        invoice_service.invoices_ready_for_printing(db, "daily")

    invoice_service.mark_printed(db, invoice.id, "manager")
    assert invoice_service.invoices_ready_for_review(db) == []


def test_compliance_report_summarises_claims(db, make_claim, make_ready_claim):
    make_claim(member_number="bad")
    invoice_service.generate_invoice_for_claim(db, make_ready_claim(op_number="OP-0002").id, "manager")
    now = utcnow()

    report = invoice_service.compliance_report(db, now - timedelta(days=1), now + timedelta(days=1))
    assert report["summary"]["total_claims"] == 2
    assert report["summary"]["total_invoices_generated"] == 1
    assert report["summary"]["pending_compliance"] == 2
    assert len(report["details"]) == 2


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

def test_weekly_batch_takes_unbatched_ready_claims(db, make_claim, make_ready_claim):
    ready = [make_ready_claim(op_number=f"OP-10{i}") for i in range(2)]
    make_claim(op_number="OP-DRAFT")

    batch = batch_service.create_batch(db, BatchCreate(batch_type=BatchType.WEEKLY), "manager")
    assert batch.batch_number == f"SHA-BATCH-{utcnow():%Y%m%d}-0001"
    assert batch.status == BatchStatus.DRAFT
    assert batch.total_claims == 2
    assert batch.total_amount == sum(c.claim_amount for c in ready)
    assert sorted(c.id for c in batch.claims) == sorted(c.id for c in ready)

    with pytest.raises(InvalidStateError):
        batch_service.create_batch(db, BatchCreate(batch_type=BatchType.WEEKLY), "manager")


def test_custom_batch_takes_listed_claims(db, make_ready_claim):
    first = make_ready_claim()
    make_ready_claim(op_number="OP-0002")
    batch = batch_service.create_batch(
        db, BatchCreate(batch_type=BatchType.CUSTOM, claim_ids=[first.id]), "manager"
    )
    assert [c.id for c in batch.claims] == [first.id]


def test_batch_window_ignores_old_claims(db, make_ready_claim):
    claim = make_ready_claim()
    claim.created_at = utcnow() - timedelta(days=10)
    db.commit()
    with pytest.raises(InvalidStateError):
        batch_service.create_batch(db, BatchCreate(batch_type=BatchType.WEEKLY), "manager")


def test_delete_batch_releases_claims(db, make_ready_claim):
    claim = make_ready_claim()
    batch = batch_service.create_batch(db, BatchCreate(batch_type=BatchType.WEEKLY), "manager")
    batch_service.delete_batch(db, batch.id)
    db.refresh(claim)
    assert claim.batch_id is None
    assert claim.status == ClaimStatus.READY_TO_SUBMIT


def test_only_draft_batches_can_be_deleted(db, make_ready_claim):
    make_ready_claim()
    batch = batch_service.create_batch(db, BatchCreate(batch_type=BatchType.WEEKLY), "manager")
    batch.status = BatchStatus.SUBMITTED
    db.commit()
    with pytest.raises(InvalidStateError):
        batch_service.delete_batch(db, batch.id)


def test_batch_invoices_and_printing(db, make_ready_claim):
    claims = [make_ready_claim(op_number=f"OP-20{i}") for i in range(2)]
    batch = batch_service.create_batch(db, BatchCreate(batch_type=BatchType.MONTHLY), "manager")

    invoices = invoice_service.generate_invoices_for_batch(db, batch.id, "manager")
    assert sorted(i.claim_id for i in invoices) == sorted(c.id for c in claims)

    printed = batch_service.mark_printed(db, batch.id, "manager")
    assert printed == 2
    batch = batch_service.get_batch(db, batch.id)
    assert batch.invoice_generated is True
    assert batch.printed_invoices is True

    stats = batch_service.batch_statistics(db)
    assert stats["total_batches"] == 1
    assert stats["monthly_batches"] == 1
    assert stats["total_claims_in_batches"] == 2
    assert stats["batches_with_printed_invoices"] == 1


def test_batch_invoices_need_every_claim_ready(db, make_ready_claim):
    first = make_ready_claim(op_number="OP-601")
    second = make_ready_claim(op_number="OP-602")
    batch = batch_service.create_batch(db, BatchCreate(batch_type=BatchType.WEEKLY), "manager")
    second.status = ClaimStatus.DRAFT
    db.commit()

    with pytest.raises(InvalidStateError, match=second.claim_number):
        invoice_service.generate_invoices_for_batch(db, batch.id, "manager")
    db.refresh(first)
    db.refresh(batch)
    assert first.invoice is None
    assert batch.invoice_generated is False


def test_list_batches_filters_by_status(db, make_ready_claim):
    make_ready_claim()
    batch = batch_service.create_batch(db, BatchCreate(batch_type=BatchType.WEEKLY), "manager")
    batches, total = batch_service.list_batches(db, status=BatchStatus.DRAFT)
    assert total == 1 and batches[0].id == batch.id
    assert batch_service.list_batches(db, status=BatchStatus.SUBMITTED) == ([], 0)
