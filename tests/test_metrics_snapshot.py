from fastapi.testclient import TestClient
from app.api.main import app


def test_metrics_snapshot_endpoint_exists():
    c = TestClient(app)
    # generate some traffic
    c.get("/api/v1/health/live")
    r = c.get("/api/v1/metrics/snapshot")
    assert r.status_code == 200
    body = r.json()
    assert "requests" in body
    assert isinstance(body["requests"], dict)


def test_health_metrics_increment(client):
    r1 = client.get("/api/v1/health/live")
    assert r1.status_code == 200

    data = client.get("/metrics/snapshot").json()

    assert data.get("health_live", 0) >= 1
    assert data.get("requests_total", 0) >= 1


def test_ingest_counters_in_snapshot(client):
    client.post("/api/receive", json={"user_identifier": "42", "payload": {"orders": [{"id": 1}, {"id": 2}]}})
    client.post("/api/receive", json={"user_identifier": "nobody", "payload": {}})

    data = client.get("/metrics/snapshot").json()
    assert data["ingest_requests"] == 1
    assert data["ingest_rows"] == 2
    assert data["ingest_failures_TenantNotFound"] == 1


def test_readiness_checks_storage_root(client, storage_root, monkeypatch):
    assert client.get("/health/ready").json() == {"status": "ready"}

    monkeypatch.setenv("INGEST_SQLITE_ROOT", str(storage_root / "absent"))
    r = client.get("/api/v1/health/ready")
    assert r.status_code == 503
    assert r.json()["problems"][0].startswith("missing_dir:")
