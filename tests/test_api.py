from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient

from async_crm_sync.api import API_TOKEN_HEADER_NAME, create_app
from async_crm_sync.core import SubmissionOrchestrator
from async_crm_sync.errors import CrmApiError
from async_crm_sync.persistence import Persistence

API_TOKEN = "secret-token"


class DummyFieldCache:
    def __init__(self):
        self.refreshes = 0

    async def get_cached_fields(self, module):
        return []

    async def force_refresh(self):
        self.refreshes += 1


async def simulated_send(submission):
    error = submission.payload.get("simulate_error")
    if error:
        raise CrmApiError(error)
    return f"crm-{submission.id}"


@pytest.fixture
def client_and_service(tmp_path):
    svc = SubmissionOrchestrator(
        repository=Persistence(str(tmp_path / "api.db")),
        field_cache=DummyFieldCache(),
        send_operation=simulated_send,
    )

    @asynccontextmanager
    async def lifespan(app):
        await svc.start()
        yield
        await svc.stop()

    with TestClient(create_app(svc, api_token=API_TOKEN, lifespan=lifespan)) as client:
        client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
        yield client, svc


def _submit(client, data, **extra):
    response = client.post("/submissions", json={"form_name": "contact", "data": data, **extra})
    assert response.status_code == 200, response.text
    return response.json()["submission"]


def test_health_needs_no_token(tmp_path):
    client = TestClient(create_app(SubmissionOrchestrator(repository=Persistence(str(tmp_path / "x.db"))), API_TOKEN))
    assert client.get("/health").json() == {"status": "ok"}


def test_rejects_missing_or_wrong_token(client_and_service):
    client, _ = client_and_service
    response = client.get("/submissions", headers={API_TOKEN_HEADER_NAME: ""})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"
    assert client.get("/statistics", headers={API_TOKEN_HEADER_NAME: "wrong"}).status_code == 401


def test_submit_and_fetch(client_and_service):
    client, _ = client_and_service
    submission = _submit(client, {"email": "a@b.it"}, id="sub-1")
    assert submission["id"] == "sub-1"
    assert submission["sync_status"] == "synced"
    assert submission["external_id"] == "crm-sub-1"
    assert "last_error" not in submission

    fetched = client.get("/submissions/sub-1").json()
    assert fetched["ok"] is True
    assert fetched["submission"]["processing_status"] == "completed"
    assert client.get("/submissions/nope").status_code == 404


def test_submit_rejects_empty_data(client_and_service):
    client, _ = client_and_service
    response = client.post("/submissions", json={"form_name": "contact", "data": {}})
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail[0]["loc"] == ["body", "data"]
    assert "Form data cannot be empty" in detail[0]["msg"]


def test_failed_submission_and_filters(client_and_service):
    client, _ = client_and_service
    _submit(client, {"email": "a@b.it"}, id="ok")
    failed = _submit(client, {"simulate_error": "validation failed: bad email"}, id="bad")
    assert failed["sync_status"] == "failed"
    assert failed["error_category"] == "validation"

    listed = client.get("/submissions", params={"sync_status": "failed"}).json()["submissions"]
    assert [s["id"] for s in listed] == ["bad"]
    assert len(client.get("/submissions").json()["submissions"]) == 2
    assert client.get("/submissions", params={"sync_status": "bogus"}).status_code == 422


def test_audit_trail(client_and_service):
    client, _ = client_and_service
    _submit(client, {"simulate_error": "validation failed"}, id="bad")

    body = client.get("/submissions/bad/audit").json()

    assert body["submission_id"] == "bad"
    operations = [(e["operation"], e["status"]) for e in body["entries"]]
    assert operations[0] == ("received", "success")
    assert ("crm_push", "failed") in operations
    assert body["entries"][-1]["details"]["reason"] == "max_retries_exceeded"


def test_manual_retry(client_and_service):
    client, _ = client_and_service
    _submit(client, {"email": "a@b.it"}, id="ok")
    _submit(client, {"simulate_error": "validation failed"}, id="bad")

    assert client.post("/submissions/nope/retry").status_code == 404
    synced = client.post("/submissions/ok/retry").json()
    assert synced["ok"] is False and synced["scheduled"] is False
    assert client.post("/submissions/bad/retry").json() == {"ok": True, "scheduled": True}


def test_statistics_and_metrics(client_and_service):
    client, _ = client_and_service
    _submit(client, {"email": "a@b.it"})
    _submit(client, {"simulate_error": "validation failed"})

    stats = client.get("/statistics").json()["statistics"]
    assert stats["total_submissions"] == 2
    assert stats["errors_by_category"] == {"validation": 1}
    assert stats["by_sync_status"] == {"synced": 1, "failed": 1}

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert 'crs_errors_total{category="validation"} 1.0' in metrics.text
    assert 'crs_permanent_failures_total{category="validation"} 1.0' in metrics.text


def test_fields_refresh(client_and_service, tmp_path):
    client, svc = client_and_service
    assert client.post("/fields/refresh").json() == {"ok": True}
    assert svc.field_cache.refreshes == 1

    bare = TestClient(create_app(SubmissionOrchestrator(repository=Persistence(str(tmp_path / "bare.db")))))
    assert bare.post("/fields/refresh").status_code == 503
