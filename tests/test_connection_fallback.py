import pytest

from app.core.ingestion.connection import BACKEND_SQLITE, ConnectionProvisioner
from app.core.ingestion.errors import TenantConnectionError
from app.core.settings import Settings
from app.core.tenants.directory import Tenant

ACME = Tenant(id="42", name="Acme", database_name="client_acme")


def test_sqlite_used_when_mysql_disabled(settings):
    active = ConnectionProvisioner(settings).connect(ACME)
    try:
        assert active.backend == BACKEND_SQLITE
        assert active.dialect_name == "sqlite"
        assert active.describe()["database"].endswith("client_acme.sqlite")
    finally:
        active.close()


def test_falls_back_to_sqlite_when_mysql_unreachable(storage_root):
    # nothing listens on port 1
    settings = Settings(
        sqlite_root=storage_root,
        mysql_enabled=True,
        mysql_host="127.0.0.1",
        mysql_port=1,
        mysql_user="ingest",
        mysql_password="secret",
        connect_timeout_seconds=1,
    )
    active = ConnectionProvisioner(settings).connect(ACME)
    try:
        assert active.backend == BACKEND_SQLITE
    finally:
        active.close()


def test_missing_sqlite_file_is_a_connection_error(settings):
    ghost = Tenant(id="7", database_name="client_ghost")
    with pytest.raises(TenantConnectionError) as ei:
        ConnectionProvisioner(settings).connect(ghost)
    assert ei.value.kind == "ConnectionError"
    assert "client_ghost.sqlite" in ei.value.detail


def test_mysql_url_carries_charset_and_database():
    settings = Settings(mysql_host="db.internal", mysql_port=3307, mysql_user="ingest", mysql_password="pw")
    url = ConnectionProvisioner(settings).mysql_url(ACME)
    assert url.drivername == "mysql+pymysql"
    assert url.host == "db.internal"
    assert url.port == 3307
    assert url.database == "client_acme"
    assert url.query["charset"] == "utf8mb4"
    assert "pw" not in repr(url)


def test_describe_redacts_password(active):
    active.params["password"] = "hunter2"
    assert active.describe()["password"] == "***"
