from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.pool import NullPool

from app.core.settings import Settings

log = logging.getLogger("ingest.tenants")


@dataclass(frozen=True)
class Tenant:
    id: str
    database_name: str
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "database_name": self.database_name}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Tenant":
        return Tenant(
            id=str(d["id"]),
            database_name=str(d["database_name"]),
            name=d.get("name"),
        )


class TenantDirectory:
    """Read-only lookup of tenants by id or physical database name."""

    def find(self, identifier: str) -> Optional[Tenant]:
        raise NotImplementedError


class StaticTenantDirectory(TenantDirectory):
    def __init__(self, tenants: Iterable[Tenant]):
        self._tenants: List[Tenant] = list(tenants)

    def find(self, identifier: str) -> Optional[Tenant]:
        for t in self._tenants:
            if t.id == identifier or t.database_name == identifier:
                return t
        return None


class JsonFileTenantDirectory(TenantDirectory):
    """File-backed directory.

    Format:
      {"tenants": [{"id": "...", "name": "...", "database_name": "client_acme"}]}

    The file is re-read on every lookup so edits apply without a restart.
    """

    def __init__(self, path: Path):
        self.path = path

    def _load(self) -> List[Tenant]:
        if not self.path.exists():
            log.warning("tenants file missing path=%s", self.path)
            return []
        obj = json.loads(self.path.read_text(encoding="utf-8"))
        entries = obj.get("tenants", []) if isinstance(obj, dict) else obj
        if not isinstance(entries, list):
            raise ValueError(f"tenants file {self.path} must hold a list under 'tenants'")
        return [Tenant.from_dict(e) for e in entries if isinstance(e, dict)]

    def find(self, identifier: str) -> Optional[Tenant]:
        return StaticTenantDirectory(self._load()).find(identifier)


class SqlCatalogTenantDirectory(TenantDirectory):
    """Looks tenants up in the central ``clients`` catalog table."""

    def __init__(self, url: str, table: str = "clients"):
        self.url = url
        self.table = table

    def find(self, identifier: str) -> Optional[Tenant]:
        engine = create_engine(self.url, poolclass=NullPool)
        try:
            with engine.connect() as conn:
                row = conn.execute(
                    text(
                        f"SELECT id, name, database_name FROM {self.table} "
                        "WHERE id = :ident OR database_name = :ident LIMIT 1"
                    ),
                    {"ident": identifier},
                ).mappings().first()
        finally:
            engine.dispose()
        if row is None:
            return None
        return Tenant.from_dict(dict(row))


def get_tenant_directory(settings: Settings) -> TenantDirectory:
    if settings.catalog_url:
        return SqlCatalogTenantDirectory(settings.catalog_url)
    if settings.tenants_file is not None:
        return JsonFileTenantDirectory(settings.tenants_file)
    return JsonFileTenantDirectory(settings.sqlite_root / "tenants.json")
