from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from app.core.settings import Settings

from .types import (
    ColumnKind,
    ColumnType,
    IntegerClass,
    TextClass,
    TimestampClass,
    classify_value,
    integer_kind_for,
)

log = logging.getLogger("ingest.inference")


@dataclass
class InferenceResult:
    types: Dict[str, ColumnType]
    estimated_row_bytes: int
    downgraded: List[str] = field(default_factory=list)

    def describe(self) -> Dict[str, str]:
        return {name: t.describe() for name, t in self.types.items()}


@dataclass
class _ColumnScan:
    is_integer: bool = True
    is_timestamp: bool = True
    seen: int = 0
    max_int: int = 0
    min_int: int = 0
    max_len: int = 0

    def observe(self, value: Any) -> None:
        cls = classify_value(value)
        if cls is None:
            return
        self.seen += 1

        if isinstance(cls, IntegerClass):
            self.is_timestamp = False
            self.max_int = max(self.max_int, cls.value)
            self.min_int = min(self.min_int, cls.value)
            self.max_len = max(self.max_len, len(str(cls.value)))
        elif isinstance(cls, TimestampClass):
            self.is_integer = False
            self.max_len = max(self.max_len, len(cls.literal))
        elif isinstance(cls, TextClass):
            self.is_integer = False
            self.is_timestamp = False
            self.max_len = max(self.max_len, cls.length)


def collect_columns(rows: Iterable[Mapping[str, Any]], exclude: Iterable[str] = ()) -> List[str]:
    """Union of row keys in first-seen order."""
    skip = set(exclude)
    seen: Dict[str, None] = {}
    for row in rows:
        for key in row.keys():
            if key not in skip and key not in seen:
                seen[key] = None
    return list(seen)


def _text_type(name: str, max_len: int, settings: Settings) -> ColumnType:
    if max_len > settings.medium_text_max_length:
        return ColumnType(name, ColumnKind.LONG_TEXT)
    if max_len > settings.text_max_length:
        return ColumnType(name, ColumnKind.MEDIUM_TEXT)

    widest_short = max(settings.short_text_lengths)
    if max_len > widest_short:
        return ColumnType(name, ColumnKind.TEXT)
    if settings.text_policy == "widest":
        return ColumnType(name, ColumnKind.SHORT_TEXT, widest_short)
    for length in sorted(settings.short_text_lengths):
        if max_len <= length:
            return ColumnType(name, ColumnKind.SHORT_TEXT, length)
    return ColumnType(name, ColumnKind.SHORT_TEXT, widest_short)


def classify_column(name: str, values: Iterable[Any], settings: Settings) -> ColumnType:
    scan = _ColumnScan()
    for v in values:
        scan.observe(v)

    if scan.seen == 0:
        return _text_type(name, 0, settings)

    if scan.is_integer:
        lo = integer_kind_for(scan.min_int, settings.int_thresholds)
        hi = integer_kind_for(scan.max_int, settings.int_thresholds)
        if lo is None or hi is None:
            # beyond 64-bit: keep the digits as text
            return _text_type(name, scan.max_len, settings)
        if settings.integer_policy == "widest":
            return ColumnType(name, ColumnKind.BIG_INT)
        order = list(ColumnKind)
        return ColumnType(name, max(lo, hi, key=order.index))

    if scan.is_timestamp:
        return ColumnType(name, ColumnKind.TIMESTAMP)

    return _text_type(name, scan.max_len, settings)


def estimate_row_bytes(types: Iterable[ColumnType], settings: Settings) -> int:
    return sum(t.row_bytes(settings.bytes_per_char) for t in types)


def infer_types(
    rows: Sequence[Mapping[str, Any]],
    settings: Settings,
    *,
    exclude: Iterable[str] = (),
    table: Optional[str] = None,
) -> InferenceResult:
    """Derive a column type map for one table batch.

    Columns named in ``exclude`` (identity and audit columns) are not typed.
    When the estimated row width passes ``settings.row_bytes_safe_limit`` every
    fixed-width text column is downgraded to variable-length text so the
    resulting table stays insertable.
    """
    columns = collect_columns(rows, exclude=exclude)
    types: Dict[str, ColumnType] = {}
    for col in columns:
        types[col] = classify_column(col, (row.get(col) for row in rows), settings)

    downgraded: List[str] = []
    wide_table = settings.wide_table_columns > 0 and len(types) > settings.wide_table_columns
    estimated = estimate_row_bytes(types.values(), settings)

    if wide_table or estimated > settings.row_bytes_safe_limit:
        if estimated > settings.row_bytes_safe_limit:
            log.warning(
                "estimated row size %d bytes exceeds safe limit %d for table=%s; using TEXT for short strings",
                estimated,
                settings.row_bytes_safe_limit,
                table,
            )
        else:
            log.info("table=%s has %d columns; using TEXT for short strings", table, len(types))
        for col, t in types.items():
            if t.kind is ColumnKind.SHORT_TEXT:
                types[col] = ColumnType(col, ColumnKind.TEXT, nullable=t.nullable)
                downgraded.append(col)
        estimated = estimate_row_bytes(types.values(), settings)

    return InferenceResult(types=types, estimated_row_bytes=estimated, downgraded=downgraded)
