import json
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.pool import NullPool

from app.api.main import app
from app.core.ingestion.connection import ConnectionProvisioner
from app.core.observability.metrics import reset_metrics
from app.core.settings import Settings
from app.core.tenants.directory import Tenant


ACME = Tenant(id="42", name="Acme", database_name="client_acme")


@pytest.fixture(autouse=True)
def _force_test_env(monkeypatch):
    # Never reach for a real MySQL server from tests
    monkeypatch.setenv("INGEST_MYSQL_ENABLED", "0")
    monkeypatch.setenv("INGEST_ENV", "dev")
    for name in ("INGEST_TENANTS_FILE", "INGEST_CATALOG_URL", "INGEST_EXPOSE_ERROR_DETAIL", "INGEST_CHUNK_SIZE"):
        monkeypatch.delenv(name, raising=False)
    reset_metrics()


@pytest.fixture()
def storage_root(tmp_path: Path, monkeypatch) -> Path:
    """
    Tenant storage root holding tenants.json and one empty SQLite tenant file.
    """
    root = tmp_path / "tenants"
    root.mkdir(parents=True, exist_ok=True)
    (root / "tenants.json").write_text(json.dumps({"tenants": [ACME.to_dict()]}), encoding="utf-8")
    (root / f"{ACME.database_name}.sqlite").touch()
    monkeypatch.setenv("INGEST_SQLITE_ROOT", str(root))
    return root


@pytest.fixture()
def settings(storage_root: Path) -> Settings:
    return Settings(sqlite_root=storage_root, mysql_enabled=False)


@pytest.fixture()
def active(settings: Settings):
    conn = ConnectionProvisioner(settings).connect(ACME)
    yield conn
    conn.close()


@pytest.fixture()
def tenant_db(storage_root: Path):
    """
    Read-side helper for asserting what landed in the tenant file.
    """
    path = storage_root / f"{ACME.database_name}.sqlite"
    engine = create_engine(f"sqlite:///{path}", poolclass=NullPool)

    def rows(table: str):
        with engine.connect() as c:
            return [dict(r) for r in c.execute(text(f'SELECT * FROM "{table}" ORDER BY id')).mappings()]

    def execute(sql: str):
        with engine.begin() as c:
            c.exec_driver_sql(sql)

    yield SimpleNamespace(path=path, engine=engine, rows=rows, execute=execute)
    engine.dispose()


@pytest.fixture()
def client(storage_root):
    return TestClient(app)
