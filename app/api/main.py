from __future__ import annotations

import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.endpoints import connect_bi, health, receive
from app.api.endpoints import metrics as metrics_ep
from app.api.middleware.error_shaping import SafeErrorMiddleware, install_error_handlers
from app.api.middleware.request_context import RequestContextMiddleware

app = FastAPI(
    title="Tenant Ingest API",
    version="0.1.0",
)

# ------------------------------------------------------------
# Middleware stack (ORDER MATTERS)
# Starlette reverses add_middleware order: the LAST call is the OUTERMOST wrapper.
# Runtime order (outermost -> innermost):
#   SafeErrorMiddleware -> CORSMiddleware -> RequestContext -> handler
# ------------------------------------------------------------

app.add_middleware(RequestContextMiddleware)

_cors_origins_raw = os.getenv("INGEST_CORS_ORIGINS", "").strip()
_cors_origins = [o.strip() for o in _cors_origins_raw.split(",") if o.strip()] if _cors_origins_raw else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(SafeErrorMiddleware)

install_error_handlers(app)

app.include_router(receive.router)
app.include_router(connect_bi.router)
app.include_router(health.router)
app.include_router(metrics_ep.router)


@app.get("/health")
def health_check():
    return {"status": "healthy"}
