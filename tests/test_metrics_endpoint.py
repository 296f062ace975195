# tests/test_metrics_endpoint.py
from fastapi.testclient import TestClient

from blueprint import app as app_module
from blueprint import monitoring


def test_metrics_endpoint_returns_prometheus_format():
    client = TestClient(app_module.app)
    r = client.get("/metrics")
    # 404 when PROMETHEUS_ENABLED is off in the environment
    assert r.status_code in (200, 404)
    if r.status_code == 200:
        assert "text/plain" in r.headers.get("content-type", "")
        assert "blueprint_requests_total" in r.text


def test_metrics_disabled(monkeypatch):
    monkeypatch.setattr(monitoring, "PROMETHEUS_ENABLED", False)
    r = TestClient(app_module.app).get("/metrics")
    assert r.status_code == 404


def test_health_still_works():
    client = TestClient(app_module.app)
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_capture_failure_is_noop_without_dsn(monkeypatch):
    calls = []
    monkeypatch.setattr(monitoring, "SENTRY_DSN", None)
    monkeypatch.setattr(monitoring.sentry_sdk, "capture_exception", calls.append)
    monitoring.capture_failure(RuntimeError("boom"), export_id="e1")
    assert calls == []


def test_capture_failure_reports_with_context(monkeypatch):
    calls, contexts = [], []
    monkeypatch.setattr(monitoring, "SENTRY_DSN", "https://key@example.invalid/1")
    monkeypatch.setattr(monitoring.sentry_sdk, "capture_exception", calls.append)
    monkeypatch.setattr(monitoring.sentry_sdk, "set_context", lambda name, ctx: contexts.append((name, ctx)))
    err = RuntimeError("boom")
    monitoring.capture_failure(err, export_id="e1", stage="bundling")
    assert calls == [err]
    assert contexts == [("export", {"export_id": "e1", "stage": "bundling"})]
