from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from app.core.settings import Settings, get_settings
from app.core.tenants.directory import Tenant, TenantDirectory, get_tenant_directory

from .connection import ActiveConnection, ConnectionProvisioner
from .errors import IngestionError, LoadError, PayloadValidationError, TenantNotFound
from .inference import InferenceResult, infer_types
from .keys import resolve_conflict_key
from .loader import BatchLoader, LoadReport, utc_now
from .schema import IDENTITY_COLUMN, RESERVED_COLUMNS, SchemaChange, SchemaManager

log = logging.getLogger("ingest.service")

IDENTIFIER_SANITIZE_PATTERN = re.compile(r"[^A-Za-z0-9_]")
MAX_IDENTIFIER_LENGTH = 64


def sanitize_identifier(name: str) -> str:
    return IDENTIFIER_SANITIZE_PATTERN.sub("", str(name))[:MAX_IDENTIFIER_LENGTH]


def primary_key_source(table: str, rows: Sequence[Mapping[str, Any]]) -> Optional[str]:
    """Input column that carries the row identity: ``id``, else ``<table>_id``."""
    keys: Dict[str, None] = {}
    for row in rows:
        for k in row:
            keys.setdefault(k, None)
    for wanted in (IDENTITY_COLUMN, f"{table.lower()}_id"):
        for k in keys:
            if k.lower() == wanted:
                return k
    return None


@dataclass
class TablePlan:
    name: str
    source_name: str
    rows: List[Dict[str, Any]]
    pk_source: Optional[str] = None
    inference: Optional[InferenceResult] = None
    change: Optional[SchemaChange] = None
    conflict_key: List[str] = field(default_factory=list)
    load: Optional[LoadReport] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"rows": self.load.rows if self.load else 0}
        if self.change is not None:
            out.update(self.change.to_dict())
        out["conflict_key"] = list(self.conflict_key)
        out["warnings"] = list(self.load.warnings) if self.load else []
        if self.inference is not None:
            out["types"] = self.inference.describe()
            out["estimated_row_bytes"] = self.inference.estimated_row_bytes
        return out


@dataclass
class IngestReport:
    tenant: Tenant
    backend: str
    tables: List[TablePlan] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def rows_loaded(self) -> int:
        return sum(p.load.rows for p in self.tables if p.load)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant": self.tenant.id,
            "backend": self.backend,
            "rows_loaded": self.rows_loaded,
            "tables": {p.name: p.to_dict() for p in self.tables},
            "skipped": list(self.skipped),
        }


def _table_rows(table: str, entry: Any) -> List[Any]:
    # Accept both `[...]` and `{"data": [...], "columns": [...]}`
    if isinstance(entry, Mapping):
        entry = entry.get("data") or []
    if not isinstance(entry, list):
        raise PayloadValidationError(
            "Invalid payload",
            errors=[{"loc": ["payload", table], "msg": "table data must be a list of rows"}],
        )
    return entry


def build_plans(payload: Mapping[str, Any]) -> Tuple[List[TablePlan], List[str]]:
    """Sanitize names and split the payload into per-table plans.

    Empty table batches are returned as skipped and never reach inference.
    """
    plans: Dict[str, TablePlan] = {}
    skipped: List[str] = []
    errors: List[Dict[str, Any]] = []

    for source_name, entry in payload.items():
        table = sanitize_identifier(source_name)
        if not table:
            errors.append({"loc": ["payload", source_name], "msg": "table name has no usable characters"})
            continue

        rows = _table_rows(source_name, entry)
        if not rows:
            log.info("skipping empty table table=%s", table)
            skipped.append(table)
            continue

        clean_rows: List[Dict[str, Any]] = []
        for i, row in enumerate(rows):
            if not isinstance(row, Mapping):
                errors.append({"loc": ["payload", source_name, i], "msg": "row must be an object"})
                continue
            clean: Dict[str, Any] = {}
            origin: Dict[str, str] = {}
            for key, value in row.items():
                col = sanitize_identifier(key)
                if not col:
                    errors.append({"loc": ["payload", source_name, i, key], "msg": "column name has no usable characters"})
                    continue
                if col in origin:
                    errors.append(
                        {
                            "loc": ["payload", source_name, i, key],
                            "msg": f"column name collides with '{origin[col]}' after sanitizing",
                        }
                    )
                    continue
                origin[col] = key
                clean[col] = value
            clean_rows.append(clean)

        if table in plans:
            plans[table].rows.extend(clean_rows)
        else:
            plans[table] = TablePlan(name=table, source_name=str(source_name), rows=clean_rows)

    if errors:
        raise PayloadValidationError("Invalid payload", errors=errors)

    for plan in plans.values():
        plan.pk_source = primary_key_source(plan.name, plan.rows)
    return list(plans.values()), skipped


class IngestionService:
    """Runs one ingestion request: one tenant, one connection, one transaction."""

    def __init__(
        self,
        settings: Settings,
        directory: TenantDirectory,
        provisioner: Optional[ConnectionProvisioner] = None,
    ):
        self.settings = settings
        self.directory = directory
        self.provisioner = provisioner or ConnectionProvisioner(settings)

    def resolve_tenant(self, identifier: str) -> Tenant:
        tenant = self.directory.find(identifier)
        if tenant is None:
            raise TenantNotFound(identifier)
        return tenant

    def ingest(self, identifier: str, payload: Mapping[str, Any]) -> IngestReport:
        start = time.time()
        tenant = self.resolve_tenant(identifier)
        plans, skipped = build_plans(payload)

        active = self.provisioner.connect(tenant)
        report = IngestReport(tenant=tenant, backend=active.backend, skipped=skipped)
        try:
            with active.connection.begin():
                self._run(active, plans)
        except IngestionError:
            log.error("ingestion rolled back tenant=%s tables=%s", tenant.id, [p.name for p in plans])
            raise
        except SQLAlchemyError as e:
            log.error("ingestion rolled back tenant=%s error=%s", tenant.id, e)
            failed = next((p.name for p in plans if p.load is None), "<commit>")
            raise LoadError(failed, e) from e
        finally:
            active.close()

        report.tables = plans
        report.duration_ms = int((time.time() - start) * 1000)
        log.info(
            "%s",
            {
                "event": "ingest",
                "tenant": tenant.id,
                "backend": active.backend,
                "tables": len(plans),
                "skipped": len(skipped),
                "rows": report.rows_loaded,
                "duration_ms": report.duration_ms,
            },
        )
        return report

    def _run(self, active: ActiveConnection, plans: List[TablePlan]) -> None:
        schema = SchemaManager(active)

        # MySQL commits DDL implicitly: finish every schema change before the
        # first row is written so no data is committed ahead of the request.
        for plan in plans:
            exclude = set(RESERVED_COLUMNS)
            if plan.pk_source:
                exclude.add(plan.pk_source)
            plan.inference = infer_types(plan.rows, self.settings, exclude=exclude, table=plan.name)
            log.info(
                "types inferred table=%s rows=%d columns=%d row_bytes=%d",
                plan.name,
                len(plan.rows),
                len(plan.inference.types),
                plan.inference.estimated_row_bytes,
            )
            plan.change = schema.ensure_schema(plan.name, plan.inference.types)

        loader = BatchLoader(active, chunk_size=self.settings.chunk_size, now=utc_now())
        for plan in plans:
            columns = [c["name"] for c in schema.reflect_columns(plan.name)]
            plan.conflict_key = resolve_conflict_key(active.connection, plan.name, columns)
            plan.load = loader.load(
                plan.name, plan.rows, plan.conflict_key, pk_source=plan.pk_source, types=plan.inference.types
            )


def get_ingestion_service(settings: Optional[Settings] = None) -> IngestionService:
    s = settings or get_settings()
    return IngestionService(s, get_tenant_directory(s))
