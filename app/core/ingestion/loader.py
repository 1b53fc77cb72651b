from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import Column, MetaData, Table
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import sqltypes

from app.core.observability.metrics import ROWS_LOADED_TOTAL

from .connection import ActiveConnection
from .errors import LoadError
from .keys import update_columns
from .schema import AUDIT_COLUMNS, IDENTITY_COLUMN
from .types import ISO_DATETIME_RE, NATIVE_DATETIME_RE, ColumnKind, ColumnType, is_empty

log = logging.getLogger("ingest.loader")

# Stamps refreshed on conflict; created_at keeps its first value.
TOUCH_COLUMNS = ("updated_at", "synced_at")

# SQLITE_MAX_VARIABLE_NUMBER default since sqlite 3.32
_SQLITE_MAX_VARIABLES = 32766


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def normalize_timestamp(value: Any) -> Tuple[Optional[datetime], bool]:
    """Convert a payload value to a naive UTC datetime at second precision.

    Returns (value, ok). ``ok`` is False when a non-empty value could not be
    parsed; the value is then None.
    """
    if is_empty(value):
        return None, True
    if isinstance(value, datetime):
        return value.replace(microsecond=0), True
    if not isinstance(value, str):
        return None, False

    # the shape regexes accept impossible dates such as 2024-02-30
    try:
        if ISO_DATETIME_RE.match(value):
            return datetime.strptime(value[:19], "%Y-%m-%dT%H:%M:%S"), True
        if NATIVE_DATETIME_RE.match(value):
            return datetime.strptime(value, "%Y-%m-%d %H:%M:%S"), True

        candidate = value.strip()
        if candidate.endswith("Z"):
            candidate = candidate[:-1] + "+00:00"
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None, False
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed.replace(microsecond=0), True


def chunked(rows: Sequence[Dict[str, Any]], size: int) -> Iterator[List[Dict[str, Any]]]:
    for i in range(0, len(rows), size):
        yield list(rows[i : i + size])


def group_by_columns(rows: Sequence[Dict[str, Any]]) -> List[List[Dict[str, Any]]]:
    """Split rows into runs sharing one column set (multi-row VALUES needs uniform keys)."""
    groups: Dict[Tuple[str, ...], List[Dict[str, Any]]] = {}
    for row in rows:
        groups.setdefault(tuple(sorted(row)), []).append(row)
    return list(groups.values())


@dataclass
class LoadReport:
    table: str
    rows: int = 0
    statements: int = 0
    warnings: List[str] = field(default_factory=list)

    def warn(self, message: str) -> None:
        log.warning("%s table=%s", message, self.table)
        self.warnings.append(message)


class BatchLoader:
    """Upserts rows into one tenant table inside the caller's transaction."""

    def __init__(self, active: ActiveConnection, *, chunk_size: int = 500, now: Optional[datetime] = None):
        self.active = active
        self.conn = active.connection
        self.chunk_size = chunk_size
        self.now = now or utc_now()

    def reflect(self, table: str, types: Optional[Mapping[str, ColumnType]] = None) -> Table:
        """Reflect ``table`` for binding this batch's values.

        A timestamp column that this batch inferred as something else is bound
        as text. MySQL has already widened such a column; sqlite keeps the
        declared type, and its DateTime binding only accepts datetimes.
        """
        tbl = Table(table, MetaData(), autoload_with=self.conn)
        inferred = {k.lower(): t.kind for k, t in (types or {}).items()}
        as_text = [
            Column(c.name, sqltypes.Text())
            for c in tbl.columns
            if isinstance(c.type, sqltypes.DateTime)
            and inferred.get(c.name.lower(), ColumnKind.TIMESTAMP) is not ColumnKind.TIMESTAMP
        ]
        if not as_text:
            return tbl
        log.info("binding timestamp columns as text table=%s columns=%s", table, [c.name for c in as_text])
        return Table(table, MetaData(), *as_text, autoload_with=self.conn)

    def prepare_row(
        self,
        row: Mapping[str, Any],
        tbl: Table,
        report: LoadReport,
        *,
        pk_source: Optional[str] = None,
    ) -> Dict[str, Any]:
        by_lower = {c.name.lower(): c for c in tbl.columns}
        out: Dict[str, Any] = {}

        for key, value in row.items():
            name = IDENTITY_COLUMN if (pk_source and key == pk_source and IDENTITY_COLUMN in tbl.c) else key
            col = tbl.c[name] if name in tbl.c else by_lower.get(name.lower())
            if col is None:
                continue

            if isinstance(col.type, sqltypes.DateTime):
                value, ok = normalize_timestamp(value)
                if not ok:
                    report.warn(f"unparsable timestamp for column '{col.name}': {row.get(key)!r} stored as NULL")
            elif isinstance(value, bool):
                value = int(value)
            out[col.name] = value

        for stamp in AUDIT_COLUMNS:
            if stamp in tbl.c and out.get(stamp) is None:
                out[stamp] = self.now
        return out

    def upsert_statement(self, tbl: Table, rows: List[Dict[str, Any]], key: Sequence[str]):
        present = list(rows[0].keys())
        overwrite = update_columns(present, key) + [c for c in TOUCH_COLUMNS if c in present]
        dialect = self.conn.dialect.name

        if dialect == "mysql":
            stmt = mysql_insert(tbl).values(rows)
            set_ = {c: stmt.inserted[c] for c in overwrite}
            if not set_:
                set_ = {key[0]: stmt.inserted[key[0]]}
            return stmt.on_duplicate_key_update(set_)

        if dialect == "sqlite":
            stmt = sqlite_insert(tbl).values(rows)
            set_ = {c: stmt.excluded[c] for c in overwrite}
            if not set_:
                return stmt.on_conflict_do_nothing(index_elements=list(key))
            return stmt.on_conflict_do_update(index_elements=list(key), set_=set_)

        raise NotImplementedError(f"upsert not supported for dialect {dialect}")

    def _chunk_size_for(self, columns: int) -> int:
        if self.conn.dialect.name == "sqlite":
            return max(1, min(self.chunk_size, _SQLITE_MAX_VARIABLES // max(1, columns)))
        return self.chunk_size

    def load(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        conflict_key: Sequence[str],
        *,
        pk_source: Optional[str] = None,
        types: Optional[Mapping[str, ColumnType]] = None,
    ) -> LoadReport:
        report = LoadReport(table=table)
        try:
            tbl = self.reflect(table, types)
            prepared = [self.prepare_row(r, tbl, report, pk_source=pk_source) for r in rows]
            size = self._chunk_size_for(len(tbl.columns))

            for index, chunk in enumerate(chunked(prepared, size)):
                for group in group_by_columns(chunk):
                    self.conn.execute(self.upsert_statement(tbl, group, conflict_key))
                    report.statements += 1
                log.debug("chunk upserted table=%s chunk=%d rows=%d", table, index, len(chunk))
        except (SQLAlchemyError, NotImplementedError) as e:
            log.error("upsert failed table=%s error=%s", table, e)
            raise LoadError(table, e) from e

        report.rows = len(prepared)
        ROWS_LOADED_TOTAL.labels(backend=self.active.backend).inc(report.rows)
        log.info(
            "upsert complete table=%s rows=%d statements=%d key=%s warnings=%d",
            table,
            report.rows,
            report.statements,
            list(conflict_key),
            len(report.warnings),
        )
        return report
