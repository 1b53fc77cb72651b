from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Request
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from app.api.schemas.ingest import ConnectBIRequest, ConnectBIResponse
from app.core.ingestion.errors import TenantConnectionError
from app.core.ingestion.service import get_ingestion_service

router = APIRouter(tags=["bi"])


@router.post("/api/connectbi", response_model=ConnectBIResponse)
@router.post("/api/v1/connectbi", response_model=ConnectBIResponse)
def connect_bi(body: ConnectBIRequest, request: Request) -> Dict[str, Any]:
    """Read-only: connection parameters (password redacted) plus tables and columns."""
    request.state.tenant = body.user_identifier

    service = get_ingestion_service()
    tenant = service.resolve_tenant(body.user_identifier)
    active = service.provisioner.connect(tenant)
    try:
        insp = inspect(active.connection)
        tables: List[Dict[str, Any]] = [
            {"table": t, "columns": [c["name"] for c in insp.get_columns(t)]}
            for t in insp.get_table_names()
        ]
    except SQLAlchemyError as e:
        raise TenantConnectionError(f"Cannot introspect storage for tenant '{tenant.id}'", detail=str(e)) from e
    finally:
        active.close()

    return {"tenant": tenant.id, "connection": active.describe(), "tables": tables}
