from __future__ import annotations

import os
import uuid

from fastapi import APIRouter
from starlette.responses import JSONResponse

from app.core.observability.metrics import inc_named
from app.core.settings import get_settings

router = APIRouter()


# ------------------------------------------------------------
# Unversioned health
# ------------------------------------------------------------
@router.get("/health/live")
async def live():
    inc_named("health_live")
    return {"status": "ok"}


@router.get("/health/ready")
def ready():
    return readiness()


# ------------------------------------------------------------
# Versioned health
# ------------------------------------------------------------
@router.get("/api/v1/health/live")
def liveness():
    inc_named("health_live")
    return {"status": "alive"}


@router.get("/api/v1/health/ready")
def readiness():
    """
    Readiness reflects ability to serve traffic.
    The fallback storage root must be writable; in prod the primary backend
    must also be configured.
    """
    inc_named("health_ready")

    settings = get_settings()
    problems: list[str] = []

    if settings.env == "prod" and settings.mysql_enabled and not settings.mysql_user:
        problems.append("missing_env:INGEST_MYSQL_USER")

    root = settings.sqlite_root
    if not root.is_dir():
        problems.append(f"missing_dir:sqlite_root={root}")
    else:
        probe = root / f".ready-{uuid.uuid4().hex}.tmp"
        try:
            probe.write_text("ok", encoding="utf-8")
            os.remove(probe)
        except OSError:
            problems.append(f"not_writable:sqlite_root={root}")

    if problems:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "problems": problems},
        )

    return {"status": "ready"}
