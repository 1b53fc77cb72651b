from __future__ import annotations

from collections import Counter
from typing import Dict, Optional

from prometheus_client import Counter as PromCounter

# Requests counters (HTTP-level)
_REQUESTS = Counter()

# Named counters (custom)
_NAMED = Counter()

ROWS_LOADED_TOTAL = PromCounter(
    "ingest_rows_loaded_total",
    "Rows upserted into tenant tables",
    ["backend"],
)

TABLES_CREATED_TOTAL = PromCounter(
    "ingest_tables_created_total",
    "Tenant tables created on first payload",
    ["backend"],
)

COLUMNS_ADDED_TOTAL = PromCounter(
    "ingest_columns_added_total",
    "Columns appended to existing tenant tables",
    ["backend"],
)

BACKEND_FALLBACKS_TOTAL = PromCounter(
    "ingest_backend_fallbacks_total",
    "Requests that fell back from the primary backend",
    ["backend"],
)

INGEST_FAILURES_TOTAL = PromCounter(
    "ingest_failures_total",
    "Failed ingestion requests by error kind",
    ["kind"],
)


def reset_metrics() -> None:
    """
    Test helper: clears in-process counters to avoid cross-test leakage.
    Prometheus collectors are process-global and are not reset.
    """
    _REQUESTS.clear()
    _NAMED.clear()


def inc_http(method: str, path: str, status: Optional[int] = None) -> None:
    m = (method or "UNKNOWN").upper()
    p = path or "/"
    s = status if status is not None else "unknown"

    _REQUESTS["requests_total"] += 1
    _REQUESTS[f"requests_{m}"] += 1
    _REQUESTS[f"path_{p}|{s}"] += 1


def inc_named(name: str, value: int = 1) -> None:
    """
    Increment a named counter (health probes, ingestion totals).
    """
    if not name:
        return
    _NAMED[name] += int(value)


def snapshot_requests() -> Dict[str, int]:
    return dict(_REQUESTS)


def snapshot_named() -> Dict[str, int]:
    return dict(_NAMED)
