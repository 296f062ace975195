# tests/test_api_exports.py
"""
HTTP surface: the pipeline runs as a background task, which TestClient
finishes before returning the response.
"""
import pytest
from fastapi.testclient import TestClient

from blueprint import app as app_module
from blueprint import auth as authmod
from blueprint import db as dbmod
from blueprint.usage import UsageRecord, UsageRecorder

HEADERS = {"x-user-id": "user-1"}


@pytest.fixture
def client(monkeypatch, seeded_session, make_orchestrator):
    monkeypatch.setattr(app_module, "orchestrator", make_orchestrator())
    monkeypatch.setattr(authmod, "MOCK_AUTH", True)
    return TestClient(app_module.app)


def _create(client, **body):
    payload = {"session_id": "sess-1"}
    payload.update(body)
    return client.post("/api/exports", json=payload, headers=HEADERS)


def test_create_export_returns_processing_then_completes(client):
    r = _create(client)
    assert r.status_code == 202
    body = r.json()
    assert body["status"] == "processing"
    assert body["progress"] == 0
    assert "storage_path" not in body

    r2 = client.get(f"/api/exports/{body['id']}", headers=HEADERS)
    assert r2.status_code == 200
    done = r2.json()
    assert done["status"] == "completed"
    assert done["version"] == "1.0.0"
    assert done["progress"] == 100
    assert done["file_size"] > 0


def test_unknown_format_is_a_validation_error(client):
    r = _create(client, format="tarball")
    assert r.status_code == 400
    body = r.json()
    assert body["status"] == "error"
    assert body["error_code"] == "E_VALIDATION"
    assert body["details"]["errors"]


def test_incomplete_session_is_rejected(monkeypatch, seed, make_orchestrator):
    seed(session_id="draft", phases=3)
    monkeypatch.setattr(app_module, "orchestrator", make_orchestrator())
    monkeypatch.setattr(authmod, "MOCK_AUTH", True)
    r = TestClient(app_module.app).post("/api/exports", json={"session_id": "draft"},
                                        headers=HEADERS)
    assert r.status_code == 400
    assert r.json()["error_code"] == "E_VALIDATION"


def test_missing_session_and_export_are_404(client):
    r = _create(client, session_id="nope")
    assert r.status_code == 404
    assert r.json()["error_code"] == "E_NOT_FOUND"
    assert client.get("/api/exports/does-not-exist", headers=HEADERS).status_code == 404


def test_other_user_cannot_read_export(client):
    export_id = _create(client).json()["id"]
    r = client.get(f"/api/exports/{export_id}", headers={"x-user-id": "intruder"})
    assert r.status_code == 404


def test_history_and_reexport(client):
    _create(client)
    r = client.post("/api/sessions/sess-1/reexport", headers=HEADERS)
    assert r.status_code == 202

    history = client.get("/api/sessions/sess-1/exports", headers=HEADERS).json()
    assert history["session_id"] == "sess-1"
    assert [v["version"] for v in history["versions"]] == ["1.0.1", "1.0.0"]

    limited = client.get("/api/sessions/sess-1/exports?limit=1", headers=HEADERS).json()
    assert [v["version"] for v in limited["versions"]] == ["1.0.1"]


def test_reexport_accepts_format(client):
    r = client.post("/api/sessions/sess-1/reexport", json={"format": "plain-document"},
                    headers=HEADERS)
    assert r.status_code == 202
    assert r.json()["format"] == "plain-document"


def test_download_link_and_delete(client):
    export_id = _create(client).json()["id"]
    r = client.get(f"/api/exports/{export_id}/download?expires_in=600", headers=HEADERS)
    assert r.status_code == 200
    link = r.json()
    assert link["export_id"] == export_id
    assert "expires=" in link["url"]

    r = client.delete(f"/api/exports/{export_id}", headers=HEADERS)
    assert r.status_code == 200
    assert r.json() == {"status": "deleted", "export_id": export_id}
    assert client.get(f"/api/exports/{export_id}", headers=HEADERS).status_code == 404


def test_usage_summary(client):
    UsageRecorder().record(UsageRecord(user_id="user-1", session_id="sess-1",
                                       model_id="gpt-4o", input_tokens=10, output_tokens=5,
                                       cost=0.01, created_at=dbmod.utcnow()))
    r = client.get("/api/usage?period=month", headers=HEADERS)
    assert r.status_code == 200
    body = r.json()
    assert body["period"] == "month"
    assert body["request_count"] == 1
    assert body["total_tokens"] == 15

    assert client.get("/api/usage?period=week", headers=HEADERS).status_code == 400


def test_api_key_required_when_mock_auth_disabled(client, monkeypatch):
    monkeypatch.setattr(authmod, "MOCK_AUTH", False)
    monkeypatch.setattr(authmod, "API_KEYS", {"bound-key": "user-1", "open-key": None})

    assert client.get("/api/usage").status_code == 401
    assert client.get("/api/usage", headers={"x-api-key": "wrong"}).status_code == 401
    # unbound key with no caller identity
    assert client.get("/api/usage", headers={"x-api-key": "open-key"}).status_code == 401

    assert client.get("/api/usage", headers={"x-api-key": "bound-key"}).status_code == 200
    r = client.get("/api/usage", headers={"x-api-key": "open-key", "x-user-id": "user-2"})
    assert r.status_code == 200


def test_bound_key_overrides_user_header(client, monkeypatch):
    monkeypatch.setattr(authmod, "MOCK_AUTH", False)
    monkeypatch.setattr(authmod, "API_KEYS", {"bound-key": "user-1"})
    r = client.post("/api/exports", json={"session_id": "sess-1"},
                    headers={"x-api-key": "bound-key", "x-user-id": "intruder"})
    assert r.status_code == 202
    assert r.json()["user_id"] == "user-1"


def test_unbound_keys_rejected_when_bindings_required(client, monkeypatch):
    monkeypatch.setattr(authmod, "MOCK_AUTH", False)
    monkeypatch.setattr(authmod, "REQUIRE_BOUND_KEYS", True)
    monkeypatch.setattr(authmod, "API_KEYS", {"bound-key": "user-1", "open-key": None})

    r = client.get("/api/usage", headers={"x-api-key": "open-key", "x-user-id": "user-1"})
    assert r.status_code == 401
    r = client.get("/api/usage", headers={"x-api-key": "bound-key", "x-user-id": "user-2"})
    assert r.status_code == 200
    assert authmod.resolve_user_id("bound-key", "user-2") == "user-1"
