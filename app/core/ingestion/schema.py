from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import BigInteger, Column, DateTime, Integer, MetaData, SmallInteger, String, Table, Text, inspect
from sqlalchemy.dialects import mysql
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateTable
from sqlalchemy.sql import sqltypes
from sqlalchemy.types import TypeEngine

from app.core.observability.metrics import COLUMNS_ADDED_TOTAL, TABLES_CREATED_TOTAL

from .connection import BACKEND_MYSQL, ActiveConnection
from .errors import SchemaError
from .types import ColumnKind, ColumnType, widened_kind

log = logging.getLogger("ingest.schema")

IDENTITY_COLUMN = "id"
AUDIT_COLUMNS = ("created_at", "updated_at", "synced_at")
RESERVED_COLUMNS = (IDENTITY_COLUMN,) + AUDIT_COLUMNS


def sa_type_for(ct: ColumnType) -> TypeEngine:
    k = ct.kind
    if k is ColumnKind.TINY_INT:
        return SmallInteger().with_variant(mysql.TINYINT(), "mysql")
    if k is ColumnKind.SMALL_INT:
        return SmallInteger()
    if k is ColumnKind.INT:
        return Integer()
    if k is ColumnKind.BIG_INT:
        return BigInteger()
    if k is ColumnKind.SHORT_TEXT:
        return String(int(ct.length or 255))
    if k is ColumnKind.TEXT:
        return Text()
    if k is ColumnKind.MEDIUM_TEXT:
        return Text().with_variant(mysql.MEDIUMTEXT(), "mysql")
    if k is ColumnKind.LONG_TEXT:
        return Text().with_variant(mysql.LONGTEXT(), "mysql")
    if k is ColumnKind.TIMESTAMP:
        return DateTime()
    raise ValueError(f"Unsupported column kind: {k}")


def column_type_from_sa(name: str, sa_type: Any) -> Optional[ColumnType]:
    """Map a reflected column type back onto a ColumnKind.

    Returns None for types the engine never creates (DECIMAL, JSON, DATE, ...);
    such columns are left untouched by evolution.
    """
    # dialect subclasses first: TINYINT/MEDIUMTEXT/LONGTEXT extend the generic types
    if isinstance(sa_type, mysql.TINYINT):
        return ColumnType(name, ColumnKind.TINY_INT)
    if isinstance(sa_type, mysql.MEDIUMINT):
        return ColumnType(name, ColumnKind.SMALL_INT)
    if isinstance(sa_type, sqltypes.SmallInteger):
        return ColumnType(name, ColumnKind.SMALL_INT)
    if isinstance(sa_type, sqltypes.BigInteger):
        return ColumnType(name, ColumnKind.BIG_INT)
    if isinstance(sa_type, sqltypes.Integer):
        return ColumnType(name, ColumnKind.INT)
    if isinstance(sa_type, sqltypes.DateTime):
        return ColumnType(name, ColumnKind.TIMESTAMP)
    if isinstance(sa_type, mysql.LONGTEXT):
        return ColumnType(name, ColumnKind.LONG_TEXT)
    if isinstance(sa_type, mysql.MEDIUMTEXT):
        return ColumnType(name, ColumnKind.MEDIUM_TEXT)
    if isinstance(sa_type, mysql.TINYTEXT):
        return ColumnType(name, ColumnKind.SHORT_TEXT, 255)
    if isinstance(sa_type, sqltypes.Text):
        return ColumnType(name, ColumnKind.TEXT)
    if isinstance(sa_type, sqltypes.String):
        if sa_type.length:
            return ColumnType(name, ColumnKind.SHORT_TEXT, int(sa_type.length))
        return ColumnType(name, ColumnKind.TEXT)
    return None


def _identity_type() -> TypeEngine:
    # sqlite only autoincrements an INTEGER PRIMARY KEY (rowid alias)
    return (
        BigInteger()
        .with_variant(mysql.BIGINT(unsigned=True), "mysql")
        .with_variant(Integer(), "sqlite")
    )


def build_table(name: str, types: Mapping[str, ColumnType], *, charset: str = "utf8mb4", collation: str = "utf8mb4_unicode_ci") -> Table:
    cols: List[Column] = [Column(IDENTITY_COLUMN, _identity_type(), primary_key=True, autoincrement=True)]
    for col, ct in types.items():
        if col in RESERVED_COLUMNS:
            continue
        cols.append(Column(col, sa_type_for(ct), nullable=True))
    for audit in AUDIT_COLUMNS:
        cols.append(Column(audit, DateTime(), nullable=True))

    return Table(
        name,
        MetaData(),
        *cols,
        mysql_engine="InnoDB",
        mysql_row_format="DYNAMIC",
        mysql_charset=charset,
        mysql_collate=collation,
    )


def _is_duplicate_table(e: SQLAlchemyError) -> bool:
    msg = str(getattr(e, "orig", e)).lower()
    return "already exists" in msg or "1050" in msg


@dataclass
class SchemaChange:
    table: str
    created: bool = False
    added: List[str] = field(default_factory=list)
    widened: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "added_columns": list(self.added),
            "widened_columns": list(self.widened),
        }


class SchemaManager:
    """Creates tenant tables and evolves them additively.

    Columns are only ever appended or widened, never dropped or narrowed.
    """

    def __init__(self, active: ActiveConnection):
        self.active = active
        self.conn = active.connection
        self.dialect = active.connection.dialect

    def has_table(self, table: str) -> bool:
        return inspect(self.conn).has_table(table)

    def reflect_columns(self, table: str) -> List[Dict[str, Any]]:
        return inspect(self.conn).get_columns(table)

    def ensure_schema(self, table: str, types: Mapping[str, ColumnType]) -> SchemaChange:
        lock_name = f"ingest:{self.active.tenant.database_name}:{table}"
        try:
            with self.active.advisory_lock(lock_name):
                if not self.has_table(table):
                    change = self._create(table, types)
                    if change is not None:
                        return change
                return self._evolve(table, types)
        except (SQLAlchemyError, TimeoutError) as e:
            log.error("schema change failed table=%s error=%s", table, e)
            raise SchemaError(table, e) from e

    def _create(self, table: str, types: Mapping[str, ColumnType]) -> Optional[SchemaChange]:
        params = self.active.params
        tbl = build_table(
            table,
            types,
            charset=params.get("charset", "utf8mb4"),
            collation=params.get("collation", "utf8mb4_unicode_ci"),
        )
        try:
            self.conn.execute(CreateTable(tbl, if_not_exists=True))
        except SQLAlchemyError as e:
            if not _is_duplicate_table(e):
                raise
            log.info("table created concurrently, evolving instead table=%s", table)
            return None

        # IF NOT EXISTS is a no-op when another writer got there first
        reflected = {c["name"].lower() for c in self.reflect_columns(table)}
        if reflected != {c.name.lower() for c in tbl.columns}:
            log.info("table created concurrently, evolving instead table=%s", table)
            return None

        data_cols = [c for c in types if c not in RESERVED_COLUMNS]
        log.info("table created table=%s columns=%d types=%s", table, len(data_cols), {c: types[c].describe() for c in data_cols})
        TABLES_CREATED_TOTAL.labels(backend=self.active.backend).inc()
        return SchemaChange(table=table, created=True, added=data_cols)

    def _evolve(self, table: str, types: Mapping[str, ColumnType]) -> SchemaChange:
        change = SchemaChange(table=table)
        existing = {c["name"].lower(): c for c in self.reflect_columns(table)}

        after = IDENTITY_COLUMN if IDENTITY_COLUMN in existing else None
        for col, ct in types.items():
            if col in RESERVED_COLUMNS or col.lower() in existing:
                continue
            self.conn.exec_driver_sql(self.add_column_sql(table, ct, after=after))
            change.added.append(col)
            if after is not None:
                after = col

        for col, ct in types.items():
            reflected = existing.get(col.lower())
            if reflected is None or col in RESERVED_COLUMNS:
                continue
            current = column_type_from_sa(reflected["name"], reflected["type"])
            if current is None:
                continue
            target = widened_kind(current, ct)
            if target is None:
                continue
            if self.active.backend != BACKEND_MYSQL:
                # sqlite does not enforce declared widths
                log.info("widen skipped (not enforced by backend) table=%s column=%s %s->%s", table, col, current.describe(), target.describe())
                continue
            self.conn.exec_driver_sql(self.modify_column_sql(table, target))
            change.widened.append(f"{reflected['name']}:{current.describe()}->{target.describe()}")

        if change.added:
            COLUMNS_ADDED_TOTAL.labels(backend=self.active.backend).inc(len(change.added))
            log.info("columns added table=%s columns=%s", table, change.added)
        if change.widened:
            log.info("columns widened table=%s columns=%s", table, change.widened)
        return change

    def _q(self, name: str) -> str:
        return self.dialect.identifier_preparer.quote_identifier(name)

    def add_column_sql(self, table: str, ct: ColumnType, *, after: Optional[str] = None) -> str:
        type_sql = sa_type_for(ct).compile(dialect=self.dialect)
        sql = f"ALTER TABLE {self._q(table)} ADD COLUMN {self._q(ct.name)} {type_sql}"
        if self.dialect.name == "mysql":
            sql += " NULL"
            if after:
                sql += f" AFTER {self._q(after)}"
        return sql

    def modify_column_sql(self, table: str, ct: ColumnType) -> str:
        type_sql = sa_type_for(ct).compile(dialect=self.dialect)
        return f"ALTER TABLE {self._q(table)} MODIFY COLUMN {self._q(ct.name)} {type_sql} NULL"
