from __future__ import annotations

import logging
import traceback
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from app.core.ingestion.errors import IngestionError
from app.core.observability.metrics import INGEST_FAILURES_TOTAL, inc_named
from app.core.settings import get_settings

log = logging.getLogger("ingest.errors")


def _request_id(request: Request):
    return getattr(request.state, "request_id", None) or request.headers.get("x-request-id")


class SafeErrorMiddleware(BaseHTTPMiddleware):
    """
    - Never return stack traces to clients
    - Preserve request_id if present
    - Log traceback server-side
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            rid = _request_id(request)
            log.error(
                "Unhandled error: %s rid=%s path=%s\n%s",
                str(e),
                rid,
                request.url.path,
                traceback.format_exc(),
            )
            payload = {"error": "InternalError", "message": "Internal Server Error"}
            if rid:
                payload["request_id"] = rid
            return JSONResponse(status_code=500, content=payload)


async def ingestion_error_handler(request: Request, exc: IngestionError) -> JSONResponse:
    INGEST_FAILURES_TOTAL.labels(kind=exc.kind).inc()
    inc_named(f"ingest_failures_{exc.kind}")

    rid = _request_id(request)
    if exc.http_status >= 500:
        log.error("ingestion failed kind=%s rid=%s message=%s detail=%s", exc.kind, rid, exc.message, exc.detail)
    else:
        log.info("ingestion rejected kind=%s rid=%s message=%s", exc.kind, rid, exc.message)

    body = exc.to_dict(include_detail=get_settings().expose_error_detail)
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=exc.http_status, content=body)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    INGEST_FAILURES_TOTAL.labels(kind="ValidationError").inc()
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    body = {"error": "ValidationError", "message": "Invalid request", "errors": jsonable_encoder(errors)}
    rid = _request_id(request)
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=422, content=body)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(IngestionError, ingestion_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
