from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sha_claims.config import settings
from sha_claims.main import app
from sha_claims.models.database import get_db, init_db, utcnow
from sha_claims.models.schemas import (
    ClaimCreate,
    ClaimItemCreate,
    ClaimStatus,
    ClaimUpdate,
    DocumentCreate,
    DocumentType,
    DocumentUpdate,
    ItemType,
)
from sha_claims.services import claims as claim_service
from sha_claims.services import jobs
from sha_claims.services.sha_client import SHAClient, get_sha_client

ADMIN_HEADERS = {"X-API-Key": "demo-admin-key"}
CLAIMS_HEADERS = {"X-API-Key": "demo-claims-key"}
CLINICAL_HEADERS = {"X-API-Key": "demo-clinical-key"}
RECEPTION_HEADERS = {"X-API-Key": "demo-reception-key"}


class FakeSHA:
    """In-process stand-in for the SHA API, served through httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.claim_statuses = {}
        self.batch_statuses = {}
        self.reject_with = None
        self.submitted = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and self.reject_with is not None:
            return httpx.Response(self.reject_with, json={"error": "Invalid member number"})
        if path == "/claims/submit":
            self.submitted += 1
            return httpx.Response(200, json={"reference": f"SHA-REF-{self.submitted:04d}"})
        if path == "/claims/batch-submit":
            return httpx.Response(200, json={"batch_reference": "SHA-BREF-0001"})
        if path.startswith("/claims/status/"):
            reference = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json=self.claim_statuses.get(reference, {"status": "submitted"}))
        if path.startswith("/claims/batch-status/"):
            reference = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json=self.batch_statuses.get(reference, {"status": "processing"}))
        return httpx.Response(404, json={"error": "not found"})

    def client(self) -> SHAClient:
        return SHAClient(
            base_url="https://sha.test",
            api_key="test-key",
            provider_code="CLINIC001",
            transport=httpx.MockTransport(self.handler),
            retry_wait=0,
        )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def audit_file(tmp_path, monkeypatch):
    path = tmp_path / "audit_log.jsonl"
    monkeypatch.setattr(settings, "audit_file", str(path))
    return path


@pytest.fixture
def fake_sha(monkeypatch):
    fake = FakeSHA()
    monkeypatch.setattr(jobs, "sha_client_factory", fake.client)
    return fake


@pytest.fixture
def client(session_factory, fake_sha):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def override_get_sha_client():
        sha = fake_sha.client()
        try:
            yield sha
        finally:
            sha.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sha_client] = override_get_sha_client
    yield TestClient(app)
    app.dependency_overrides.clear()


def claim_payload(**overrides):
    payload = {
        "patient_name": "Jane Wanjiku",
        "op_number": "OP-0001",
        "member_number": "123456789",
        "visit_date": (utcnow().date() - timedelta(days=1)).isoformat(),
        "primary_diagnosis_code": "A09",
        "primary_diagnosis_description": "Infectious gastroenteritis",
        "items": [
            {
                "service_code": "CONS01",
                "service_description": "Outpatient consultation",
                "quantity": 1,
                "unit_price": 1500,
                "item_type": "consultation",
            }
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_claim(db):
    def _make(**overrides):
        return claim_service.create_claim(db, ClaimCreate(**claim_payload(**overrides)), "reception")
    return _make


@pytest.fixture
def make_documented_claim(db, make_claim):
    """A draft claim whose single required document is already verified."""
    def _make(**overrides):
        claim = make_claim(**overrides)
        document = claim_service.add_document(
            db,
            claim.id,
            DocumentCreate(document_type=DocumentType.LAB_RESULTS, file_name="labs.pdf"),
            "clinician",
        )
        claim_service.update_document(db, document.id, DocumentUpdate(compliance_verified=True), "clinician")
        db.refresh(claim)
        return claim
    return _make


@pytest.fixture
def make_ready_claim(db, make_documented_claim):
    def _make(**overrides):
        claim = make_documented_claim(**overrides)
        return claim_service.update_claim(db, claim.id, ClaimUpdate(status=ClaimStatus.READY_TO_SUBMIT))
    return _make


@pytest.fixture
def lab_item():
    return ClaimItemCreate(
        service_code="LAB01",
        service_description="Full haemogram",
        quantity=2,
        unit_price=450,
        item_type=ItemType.LAB_TEST,
    )
