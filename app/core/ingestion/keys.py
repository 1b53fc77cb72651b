from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence

from sqlalchemy import inspect
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from .errors import KeyResolutionError
from .schema import AUDIT_COLUMNS, IDENTITY_COLUMN

log = logging.getLogger("ingest.keys")

KeyStep = Callable[[Optional[Connection], str, Sequence[str]], Optional[List[str]]]


def key_from_identity(conn: Optional[Connection], table: str, columns: Sequence[str]) -> Optional[List[str]]:
    if IDENTITY_COLUMN in columns:
        return [IDENTITY_COLUMN]
    return None


def key_from_catalog(conn: Optional[Connection], table: str, columns: Sequence[str]) -> Optional[List[str]]:
    if conn is None:
        return None
    try:
        pk = inspect(conn).get_pk_constraint(table)
    except SQLAlchemyError as e:
        log.warning("primary key introspection failed table=%s error=%s", table, e)
        return None
    cols = list((pk or {}).get("constrained_columns") or [])
    return cols or None


def key_from_position(conn: Optional[Connection], table: str, columns: Sequence[str]) -> Optional[List[str]]:
    if columns:
        return [columns[0]]
    return None


RESOLVER_CHAIN: Sequence[KeyStep] = (key_from_identity, key_from_catalog, key_from_position)


def resolve_conflict_key(conn: Optional[Connection], table: str, columns: Sequence[str]) -> List[str]:
    """Conflict key for ``table``: identity column, declared primary key, then first column."""
    if not columns:
        raise KeyResolutionError(table)
    for step in RESOLVER_CHAIN:
        key = step(conn, table, columns)
        if key:
            log.debug("conflict key resolved table=%s key=%s via=%s", table, key, step.__name__)
            return key
    raise KeyResolutionError(table)


def update_columns(columns: Sequence[str], key: Sequence[str]) -> List[str]:
    """Columns overwritten on conflict: everything but the key and audit/sync stamps."""
    skip = set(key) | set(AUDIT_COLUMNS)
    return [c for c in columns if c not in skip]
