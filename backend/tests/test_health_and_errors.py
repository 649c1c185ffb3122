"""
Health endpoints, request ids and the normalized error contract.
"""
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from backend.core.errors import AppError, ValidationError, app_error_handler
from backend.core.logging import latency_bucket_ms
from backend.core.middleware.request_id import RequestIdMiddleware


def test_healthz_always_ok(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_legacy_health_alias(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "OK"


def test_readyz_ok(client):
    resp = client.get("/readyz")
    assert resp.status_code == 200


def test_readyz_reports_missing_tables(client, database):
    database.drop_all()
    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert "missing tables" in resp.json()["detail"]


def test_readyz_handles_db_down(client, database, monkeypatch):
    monkeypatch.setattr(database, "check_connection", lambda: False)
    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert resp.json()["detail"] == "database unreachable"


def test_api_health_deterministic(client):
    resp = client.get("/api/health?now=2025-01-01T00:00:00Z")
    body = resp.json()
    assert resp.status_code == 200
    assert body["ok"] is True
    assert body["computed_at"] == "2025-01-01T00:00:00Z"
    assert body["db"]["latency_ms"] is None
    assert body["db"]["tables_present"] == ["users", "payments", "event_logs"]


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(5) == "<10ms"
    assert latency_bucket_ms(50) == "10-100ms"
    assert latency_bucket_ms(500) == "100-1000ms"
    assert latency_bucket_ms(5000) == ">=1000ms"


def _make_app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, app_error_handler)

    @app.get("/")
    async def root(request: Request):
        return {"request_id": getattr(request.state, "request_id", None)}

    @app.get("/fail")
    async def fail():
        raise ValidationError("bad input")

    return app


def test_request_id_generated_and_echoed():
    client = TestClient(_make_app())
    resp = client.get("/")
    rid = resp.headers["x-request-id"]
    assert rid
    assert resp.json()["request_id"] == rid


def test_request_id_reused_from_caller():
    client = TestClient(_make_app())
    resp = client.get("/", headers={"x-request-id": "req-123"})
    assert resp.headers["x-request-id"] == "req-123"
    assert resp.json()["request_id"] == "req-123"


def test_error_contract_carries_request_id():
    client = TestClient(_make_app())
    resp = client.get("/fail", headers={"x-request-id": "req-err"})
    assert resp.status_code == 400
    assert resp.json() == {
        "error": {"code": "validation_error", "message": "bad input", "request_id": "req-err"},
        "detail": "bad input",
    }
    assert resp.headers["x-request-id"] == "req-err"


def test_unknown_route_uses_error_shape(client):
    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"
