from fastapi.testclient import TestClient
from app.api.main import app


def test_request_id_header_roundtrip():
    c = TestClient(app)
    r = c.get("/api/v1/health/live")
    assert r.status_code == 200
    assert "X-Request-Id" in r.headers
    assert len(r.headers["X-Request-Id"]) > 10


def test_request_id_passthrough():
    c = TestClient(app)
    rid = "test-rid-123"
    r = c.get("/api/v1/health/live", headers={"X-Request-Id": rid})
    assert r.headers.get("X-Request-Id") == rid


def test_request_id_echoed_in_error_body(client):
    rid = "rid-err-1"
    r = client.post(
        "/api/receive",
        json={"user_identifier": "nobody", "payload": {}},
        headers={"X-Request-Id": rid},
    )
    assert r.status_code == 404
    assert r.json()["request_id"] == rid
    assert r.headers.get("X-Request-Id") == rid
