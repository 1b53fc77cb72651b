from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from app.core.observability.metrics import BACKEND_FALLBACKS_TOTAL
from app.core.settings import Settings
from app.core.tenants.directory import Tenant

from .errors import TenantConnectionError

log = logging.getLogger("ingest.connection")

BACKEND_MYSQL = "mysql"
BACKEND_SQLITE = "sqlite"

_MYSQL_SQL_MODE = "STRICT_ALL_TABLES,NO_ZERO_IN_DATE,NO_ZERO_DATE,ERROR_FOR_DIVISION_BY_ZERO"


@dataclass
class ActiveConnection:
    """One tenant's open storage connection for the lifetime of one request."""

    tenant: Tenant
    backend: str
    engine: Engine
    connection: Connection
    params: Dict[str, Any] = field(default_factory=dict)
    lock_timeout_seconds: int = 10

    @property
    def dialect_name(self) -> str:
        return self.connection.dialect.name

    def describe(self) -> Dict[str, Any]:
        out = dict(self.params)
        if out.get("password"):
            out["password"] = "***"
        out["driver"] = self.backend
        return out

    @contextmanager
    def advisory_lock(self, name: str) -> Generator[None, None, None]:
        """Named lock held across the block.

        MySQL uses GET_LOCK (session scoped). SQLite writers are already
        serialised by the database file lock, so this is a no-op there.
        """
        if self.backend != BACKEND_MYSQL:
            yield
            return

        lock_name = name[:64]
        got = self.connection.execute(
            text("SELECT GET_LOCK(:name, :timeout)"),
            {"name": lock_name, "timeout": self.lock_timeout_seconds},
        ).scalar()
        if got != 1:
            raise TimeoutError(f"could not acquire lock {lock_name} within {self.lock_timeout_seconds}s")
        try:
            yield
        finally:
            self.connection.execute(text("SELECT RELEASE_LOCK(:name)"), {"name": lock_name})

    def close(self) -> None:
        try:
            self.connection.close()
        finally:
            self.engine.dispose()


def _sqlite_engine(url: URL, timeout: int) -> Engine:
    engine = create_engine(url, poolclass=NullPool, connect_args={"timeout": timeout})

    # pysqlite defers BEGIN and commits around DDL on its own; take over so
    # DDL and DML share the request transaction.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


class ConnectionProvisioner:
    """Resolves a tenant to a live connection: MySQL first, SQLite file second."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def mysql_url(self, tenant: Tenant) -> URL:
        s = self.settings
        return URL.create(
            "mysql+pymysql",
            username=s.mysql_user or None,
            password=s.mysql_password or None,
            host=s.mysql_host,
            port=s.mysql_port,
            database=tenant.database_name,
            query={"charset": s.mysql_charset},
        )

    def connect(self, tenant: Tenant) -> ActiveConnection:
        if self.settings.mysql_enabled:
            active = self._try_mysql(tenant)
            if active is not None:
                return active
            BACKEND_FALLBACKS_TOTAL.labels(backend=BACKEND_SQLITE).inc()
        return self._open_sqlite(tenant)

    def _try_mysql(self, tenant: Tenant) -> Optional[ActiveConnection]:
        s = self.settings
        engine = create_engine(
            self.mysql_url(tenant),
            poolclass=NullPool,
            connect_args={
                "connect_timeout": s.connect_timeout_seconds,
                "init_command": f"SET SESSION sql_mode='{_MYSQL_SQL_MODE}'",
            },
        )
        try:
            conn = engine.connect()
            conn.execute(text("SELECT 1"))
            conn.rollback()
        except (SQLAlchemyError, OSError) as e:
            engine.dispose()
            log.warning(
                "mysql unreachable, trying sqlite tenant=%s db=%s error=%s",
                tenant.id,
                tenant.database_name,
                str(e).splitlines()[0] if str(e) else type(e).__name__,
            )
            return None

        log.info("tenant connected backend=mysql tenant=%s db=%s", tenant.id, tenant.database_name)
        return ActiveConnection(
            tenant=tenant,
            backend=BACKEND_MYSQL,
            engine=engine,
            connection=conn,
            params={
                "host": s.mysql_host,
                "port": s.mysql_port,
                "database": tenant.database_name,
                "username": s.mysql_user,
                "password": s.mysql_password,
                "charset": s.mysql_charset,
                "collation": s.mysql_collation,
            },
            lock_timeout_seconds=s.lock_timeout_seconds,
        )

    def _open_sqlite(self, tenant: Tenant) -> ActiveConnection:
        path = self.settings.sqlite_path_for(tenant.database_name)
        if not path.exists():
            raise TenantConnectionError(
                f"No reachable storage for tenant '{tenant.id}'",
                detail=f"sqlite file not found: {path}",
            )

        engine = _sqlite_engine(URL.create("sqlite", database=str(path)), self.settings.lock_timeout_seconds)
        try:
            conn = engine.connect()
        except SQLAlchemyError as e:
            engine.dispose()
            raise TenantConnectionError(
                f"No reachable storage for tenant '{tenant.id}'", detail=str(e)
            ) from e

        log.info("tenant connected backend=sqlite tenant=%s path=%s", tenant.id, path)
        return ActiveConnection(
            tenant=tenant,
            backend=BACKEND_SQLITE,
            engine=engine,
            connection=conn,
            params={"database": str(path)},
            lock_timeout_seconds=self.settings.lock_timeout_seconds,
        )
