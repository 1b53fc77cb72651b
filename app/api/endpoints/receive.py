from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Request

from app.api.schemas.ingest import ReceiveRequest, ReceiveResponse
from app.core.ingestion.service import get_ingestion_service
from app.core.observability.metrics import inc_named

log = logging.getLogger("ingest.api")

router = APIRouter(tags=["ingest"])


@router.post("/api/receive", response_model=ReceiveResponse)
@router.post("/api/v1/receive", response_model=ReceiveResponse)
def receive(body: ReceiveRequest, request: Request) -> Dict[str, Any]:
    """Load a multi-table payload into the tenant's storage in one transaction."""
    request.state.tenant = body.user_identifier

    service = get_ingestion_service()
    report = service.ingest(body.user_identifier, body.tables())

    inc_named("ingest_requests")
    inc_named("ingest_rows", report.rows_loaded)

    out = report.to_dict()
    out["message"] = f"Data received and stored successfully ({report.rows_loaded} rows)"
    return out
