"""Metrics endpoints.

``/metrics`` serves the Prometheus registry (HTTP traffic plus the ingestion
counters); ``/metrics/snapshot`` returns the in-process named counters as JSON.
"""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.core.observability.metrics import snapshot_named, snapshot_requests

router = APIRouter()


def _render():
    req = snapshot_requests()
    body = {"requests": req}
    body.update(snapshot_named())

    # common totals at top level
    for k in ("requests_total", "requests_GET", "requests_POST"):
        if k in req:
            body[k] = req[k]

    return body


@router.get("/metrics", include_in_schema=False)
def prometheus_metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/metrics/snapshot")
def metrics_snapshot():
    return _render()


@router.get("/api/v1/metrics/snapshot")
def metrics_snapshot_v1():
    return _render()
