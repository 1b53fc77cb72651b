from sqlalchemy import inspect


def _orders_payload():
    return {
        "user_identifier": "42",
        "payload": {"orders": [{"id": 1, "total": 99, "placed_at": "2024-05-01T10:00:00Z"}]},
    }


def test_unknown_tenant_is_404(client):
    r = client.post("/api/receive", json={"user_identifier": "nobody", "payload": {"t": [{"a": 1}]}})
    assert r.status_code == 404
    body = r.json()
    assert body["error"] == "TenantNotFound"
    assert "nobody" in body["message"]


def test_missing_fields_are_422(client):
    r = client.post("/api/receive", json={"payload": {}})
    assert r.status_code == 422
    body = r.json()
    assert body["error"] == "ValidationError"
    assert any(e["loc"][-1] == "user_identifier" for e in body["errors"])


def test_nested_values_are_422(client):
    r = client.post("/api/receive", json={"user_identifier": "42", "payload": {"t": [{"a": {"nested": 1}}]}})
    assert r.status_code == 422
    assert r.json()["error"] == "ValidationError"


def test_unusable_table_name_is_422(client):
    r = client.post("/api/receive", json={"user_identifier": "42", "payload": {"!!!": [{"a": 1}]}})
    assert r.status_code == 422
    body = r.json()
    assert body["error"] == "ValidationError"
    assert body["errors"][0]["loc"] == ["payload", "!!!"]


def test_orders_scenario_is_idempotent(client, tenant_db):
    r1 = client.post("/api/receive", json=_orders_payload())
    assert r1.status_code == 200, r1.text
    body = r1.json()
    assert body["rows_loaded"] == 1
    assert body["backend"] == "sqlite"
    orders = body["tables"]["orders"]
    assert orders["created"] is True
    assert orders["conflict_key"] == ["id"]
    assert orders["types"] == {"total": "tiny_int", "placed_at": "timestamp"}

    r2 = client.post("/api/receive", json=_orders_payload())
    assert r2.status_code == 200
    assert r2.json()["tables"]["orders"]["created"] is False

    rows = tenant_db.rows("orders")
    assert len(rows) == 1
    assert rows[0]["id"] == 1
    assert rows[0]["total"] == 99
    assert str(rows[0]["placed_at"]).startswith("2024-05-01 10:00:00")

    cols = [c["name"] for c in inspect(tenant_db.engine).get_columns("orders")]
    assert cols == ["id", "total", "placed_at", "created_at", "updated_at", "synced_at"]


def test_tenant_can_be_addressed_by_database_name(client, tenant_db):
    r = client.post("/api/v1/receive", json={"user_identifier": "client_acme", "payload": {"items": [{"sku": "A1"}]}})
    assert r.status_code == 200
    assert r.json()["tenant"] == "42"
    assert tenant_db.rows("items")[0]["sku"] == "A1"


def test_new_columns_are_added_on_later_requests(client, tenant_db):
    client.post("/api/receive", json=_orders_payload())
    r = client.post(
        "/api/receive",
        json={"user_identifier": "42", "payload": {"orders": [{"id": 2, "total": 5, "channel": "web"}]}},
    )
    assert r.status_code == 200
    assert r.json()["tables"]["orders"]["added_columns"] == ["channel"]

    cols = [c["name"] for c in inspect(tenant_db.engine).get_columns("orders")]
    # positioned columns are a MySQL feature; sqlite appends
    assert "channel" in cols
    assert {"total", "placed_at"} <= set(cols)
    assert [r["channel"] for r in tenant_db.rows("orders")] == [None, "web"]


def test_big_integer_values_round_trip(client, tenant_db):
    client.post("/api/receive", json={"user_identifier": "42", "payload": {"ledger": [{"id": 1, "amount": 100}]}})
    r = client.post(
        "/api/receive",
        json={"user_identifier": "42", "payload": {"ledger": [{"id": 2, "amount": 3_000_000_000}]}},
    )
    assert r.status_code == 200
    assert r.json()["tables"]["ledger"]["types"]["amount"] == "big_int"
    assert [row["amount"] for row in tenant_db.rows("ledger")] == [100, 3_000_000_000]


def test_small_integers_round_trip_their_maximum(client, tenant_db):
    r = client.post("/api/receive", json={"user_identifier": "42", "payload": {"scores": [{"v": 127}, {"v": -128}]}})
    assert r.status_code == 200
    assert r.json()["tables"]["scores"]["types"]["v"] == "tiny_int"
    assert sorted(row["v"] for row in tenant_db.rows("scores")) == [-128, 127]


def test_failure_in_second_table_rolls_back_first(client, tenant_db):
    tenant_db.execute("CREATE TABLE strict_items (id INTEGER PRIMARY KEY, name TEXT NOT NULL)")
    r = client.post(
        "/api/receive",
        json={
            "user_identifier": "42",
            "payload": {
                "orders": [{"id": 1, "total": 1}],
                "strict_items": [{"id": 1, "colour": "red"}],
            },
        },
    )
    assert r.status_code == 500
    body = r.json()
    assert body["error"] == "LoadError"
    assert "detail" not in body

    insp = inspect(tenant_db.engine)
    assert not insp.has_table("orders")
    assert "colour" not in [c["name"] for c in insp.get_columns("strict_items")]
    assert tenant_db.rows("strict_items") == []


def test_error_detail_exposed_when_enabled(client, tenant_db, monkeypatch):
    monkeypatch.setenv("INGEST_EXPOSE_ERROR_DETAIL", "1")
    tenant_db.execute("CREATE TABLE strict_items (id INTEGER PRIMARY KEY, name TEXT NOT NULL)")
    r = client.post("/api/receive", json={"user_identifier": "42", "payload": {"strict_items": [{"id": 1}]}})
    assert r.status_code == 500
    assert "NOT NULL" in r.json()["detail"]


def test_empty_tables_are_skipped(client, tenant_db):
    r = client.post(
        "/api/receive",
        json={"user_identifier": "42", "payload": {"empty": [], "items": {"data": [{"sku": "B2"}], "columns": ["sku"]}}},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["skipped"] == ["empty"]
    assert list(body["tables"]) == ["items"]
    assert not inspect(tenant_db.engine).has_table("empty")


def test_names_are_sanitized(client, tenant_db):
    r = client.post(
        "/api/receive",
        json={"user_identifier": "42", "payload": {"my-table!": [{"first name": "Ada", "id": 3}]}},
    )
    assert r.status_code == 200
    assert list(r.json()["tables"]) == ["mytable"]
    (row,) = tenant_db.rows("mytable")
    assert row["firstname"] == "Ada"
    assert row["id"] == 3


def test_missing_tenant_storage_is_500(client, storage_root):
    (storage_root / "client_acme.sqlite").unlink()
    r = client.post("/api/receive", json=_orders_payload())
    assert r.status_code == 500
    assert r.json()["error"] == "ConnectionError"


def test_request_log_carries_tenant(client, caplog):
    with caplog.at_level("INFO", logger="ingest.request"):
        client.post("/api/receive", json=_orders_payload())
    assert "'tenant': '42'" in caplog.text


def test_impossible_calendar_dates_are_stored_as_null(client, tenant_db):
    rows = [
        {"id": 1, "seen_at": "2024-01-01 10:00:00"},
        {"id": 2, "seen_at": "2024-02-30 10:00:00"},
        {"id": 3, "seen_at": "2024-13-45T10:00:00Z"},
    ]
    r = client.post("/api/receive", json={"user_identifier": "42", "payload": {"events": rows}})
    assert r.status_code == 200
    warnings = r.json()["tables"]["events"]["warnings"]
    assert len(warnings) == 2
    assert all("seen_at" in w for w in warnings)
    assert [row["seen_at"] is None for row in tenant_db.rows("events")] == [False, True, True]


def test_text_sent_to_timestamp_column_is_kept(client, tenant_db):
    first = {"user_identifier": "42", "payload": {"events": [{"id": 1, "seen_at": "2024-01-01 10:00:00"}]}}
    assert client.post("/api/receive", json=first).status_code == 200

    r = client.post(
        "/api/receive",
        json={"user_identifier": "42", "payload": {"events": [{"id": 2, "seen_at": "next tuesday"}]}},
    )
    assert r.status_code == 200
    assert r.json()["tables"]["events"]["warnings"] == []
    assert tenant_db.rows("events")[1]["seen_at"] == "next tuesday"


def test_column_names_colliding_after_sanitizing_are_422(client, tenant_db):
    r = client.post("/api/receive", json={"user_identifier": "42", "payload": {"t": [{"a-b": 1, "ab": 2}]}})
    assert r.status_code == 422
    body = r.json()
    assert body["error"] == "ValidationError"
    assert body["errors"][0]["loc"] == ["payload", "t", 0, "ab"]
    assert "a-b" in body["errors"][0]["msg"]
    assert not inspect(tenant_db.engine).has_table("t")
