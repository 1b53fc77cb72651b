import pytest

from app.core.ingestion.errors import KeyResolutionError
from app.core.ingestion.keys import (
    key_from_catalog,
    key_from_identity,
    key_from_position,
    resolve_conflict_key,
    update_columns,
)


def test_identity_column_wins():
    assert key_from_identity(None, "orders", ["sku", "id"]) == ["id"]
    assert resolve_conflict_key(None, "orders", ["sku", "id"]) == ["id"]


def test_first_column_is_last_resort():
    assert key_from_identity(None, "orders", ["sku", "qty"]) is None
    assert key_from_catalog(None, "orders", ["sku", "qty"]) is None
    assert key_from_position(None, "orders", ["sku", "qty"]) == ["sku"]
    assert resolve_conflict_key(None, "orders", ["sku", "qty"]) == ["sku"]


def test_empty_column_list_fails():
    with pytest.raises(KeyResolutionError):
        resolve_conflict_key(None, "orders", [])


def test_catalog_primary_key_is_used(tenant_db, active):
    tenant_db.execute("CREATE TABLE legacy (code TEXT, sku TEXT, qty INTEGER, PRIMARY KEY (sku, qty))")
    cols = ["code", "sku", "qty"]
    assert key_from_catalog(active.connection, "legacy", cols) == ["sku", "qty"]
    assert resolve_conflict_key(active.connection, "legacy", cols) == ["sku", "qty"]


def test_update_columns_skip_key_and_stamps():
    cols = ["id", "total", "created_at", "updated_at", "synced_at", "note"]
    assert update_columns(cols, ["id"]) == ["total", "note"]
