# WORKFLOW: API tests for the import review and rate lookup endpoints.
# Test scenarios:
# 1. Health endpoints and request id propagation
# 2. Create + execute an import, then inspect summary, diffs and issues
# 3. Promotion through the API and rate lookup on the promoted version
# 4. Error mapping: unknown id -> 404, blocked gate / wrong status -> 409, bad input -> 422
#
# Testing flow: sqlite test database -> dependency overrides -> TestClient requests -> assertions

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from api.main import app
from api.routers.imports import get_orchestrator
from conftest import TestingSessionLocal
from db.session import get_db
from etl.fetcher import UsitcFetcher
from services.import_orchestrator import ImportOrchestrator
from storage.local import LocalStorage

VERSION = "2025_revision_1"
SOURCE = [
    {"htsno": "0101", "indent": "0", "description": "Live horses"},
    {"htsno": "0101.21.00", "indent": "1", "description": "Purebred", "units": ["No."], "general": "Free",
     "other": "Free"},
    {"htsno": "0101.29.00", "indent": "1", "description": "Other", "units": ["No."], "general": "4.5%",
     "other": "20%"},
]


def override_get_db():
    """Override database dependency for testing."""
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


@pytest.fixture
def source():
    return {"records": list(SOURCE)}


@pytest.fixture
def client(db, tmp_path, source):
    def handler(request):
        if request.url.path.endswith(f"hts_{VERSION}_json.json"):
            return httpx.Response(200, content=json.dumps(source["records"]).encode())
        return httpx.Response(404)

    storage = LocalStorage(str(tmp_path / "raw"))

    def override_get_orchestrator():
        session = TestingSessionLocal()
        fetcher = UsitcFetcher(
            storage,
            client=httpx.Client(transport=httpx.MockTransport(handler)),
            base_url="https://hts.test/files",
            sleep=lambda seconds: None,
        )
        try:
            yield ImportOrchestrator(session, fetcher)
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = override_get_orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_and_execute(client):
    response = client.post("/api/v1/imports", json={"version": VERSION, "started_by": "ops", "execute": True})
    assert response.status_code == 201
    return response.json()


class TestHealth:
    def test_health(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_request_id_is_echoed(self, client):
        response = client.get("/api/v1/livez", headers={"x-request-id": "abc123"})
        assert response.headers["x-request-id"] == "abc123"


class TestImportEndpoints:
    def test_create_execute_and_review(self, client):
        run = create_and_execute(client)

        assert run["status"] == "STAGED_READY"
        assert run["started_by"] == "ops"
        assert run["metadata"]["diffSummary"]["ADDED"] == 3

        summary = client.get(f"/api/v1/imports/{run['id']}/summary").json()
        assert summary["stagedCount"] == 3
        assert summary["gate"]["passed"] is True
        assert summary["diffs"]["ADDED"] == 3

        diffs = client.get(f"/api/v1/imports/{run['id']}/diffs", params={"diff_type": "ADDED", "limit": 2})
        assert diffs.status_code == 200
        assert len(diffs.json()) == 2

        issues = client.get(f"/api/v1/imports/{run['id']}/issues", params={"severity": "ERROR"})
        assert issues.json() == []

        listing = client.get("/api/v1/imports").json()
        assert [item["id"] for item in listing] == [run["id"]]

    def test_promote_and_lookup_rate(self, client):
        run = create_and_execute(client)

        response = client.post(f"/api/v1/imports/{run['id']}/promote", json={"actor": "reviewer"})

        assert response.status_code == 200
        assert response.json()["status"] == "COMPLETED"

        rate = client.get("/api/v1/rates/0101.29.00", params={"country": "de"})
        assert rate.status_code == 200
        body = rate.json()
        assert body["formula"] == "value * 0.045"
        assert body["country"] == "DE"
        assert body["version"] == VERSION

        rollback = client.post(f"/api/v1/imports/{run['id']}/rollback", json={})
        assert rollback.json()["status"] == "ROLLED_BACK"

    def test_blocked_promotion_returns_gate(self, client, source):
        source["records"] = SOURCE + [
            {"htsno": "0101.30.00", "indent": "1", "description": "Asses", "general": "call the office"},
        ]
        run = create_and_execute(client)
        assert run["status"] == "REQUIRES_REVIEW"

        response = client.post(f"/api/v1/imports/{run['id']}/promote", json={})

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["gate"]["passed"] is False
        assert detail["gate"]["errorCount"] >= 1

        issues = client.get(f"/api/v1/imports/{run['id']}/issues", params={"severity": "ERROR"}).json()
        assert issues[0]["code"] == "0101.30.00"

        override = client.post(f"/api/v1/imports/{run['id']}/promote", json={"validation_override": True})
        assert override.json()["status"] == "COMPLETED"

    def test_reject_and_invalid_transitions(self, client):
        run = client.post("/api/v1/imports", json={"version": VERSION}).json()
        assert run["status"] == "PENDING"

        assert client.post(f"/api/v1/imports/{run['id']}/promote", json={}).status_code == 409
        assert client.post(f"/api/v1/imports/{run['id']}/reject", json={"reason": "  "}).status_code == 422

        rejected = client.post(f"/api/v1/imports/{run['id']}/reject", json={"reason": "duplicate run"})
        assert rejected.json()["status"] == "REJECTED"
        assert client.post(f"/api/v1/imports/{run['id']}/retry", json={}).status_code == 409

    def test_not_found_and_validation_errors(self, client):
        assert client.get("/api/v1/imports/999").status_code == 404
        assert client.get("/api/v1/imports/999/diffs").status_code == 404
        assert client.post("/api/v1/imports/999/execute").status_code == 404
        assert client.post("/api/v1/imports", json={"version": "2025-3"}).status_code == 422
        assert client.get("/api/v1/imports/1/issues", params={"severity": "FATAL"}).status_code == 422

    def test_unknown_rate_code(self, client):
        assert client.get("/api/v1/rates/9999.99.99").status_code == 404
