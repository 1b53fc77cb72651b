from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union


class Family(str, Enum):
    INTEGER = "integer"
    TEXT = "text"
    TIMESTAMP = "timestamp"


class ColumnKind(str, Enum):
    TINY_INT = "tiny_int"
    SMALL_INT = "small_int"
    INT = "int"
    BIG_INT = "big_int"
    SHORT_TEXT = "short_text"
    TEXT = "text"
    MEDIUM_TEXT = "medium_text"
    LONG_TEXT = "long_text"
    TIMESTAMP = "timestamp"

    @property
    def family(self) -> Family:
        if self in _INTEGER_ORDER:
            return Family.INTEGER
        if self is ColumnKind.TIMESTAMP:
            return Family.TIMESTAMP
        return Family.TEXT

    @property
    def is_variable_text(self) -> bool:
        return self in (ColumnKind.TEXT, ColumnKind.MEDIUM_TEXT, ColumnKind.LONG_TEXT)


_INTEGER_ORDER = (ColumnKind.TINY_INT, ColumnKind.SMALL_INT, ColumnKind.INT, ColumnKind.BIG_INT)
_TEXT_ORDER = (ColumnKind.SHORT_TEXT, ColumnKind.TEXT, ColumnKind.MEDIUM_TEXT, ColumnKind.LONG_TEXT)

INTEGER_BYTES = {
    ColumnKind.TINY_INT: 1,
    ColumnKind.SMALL_INT: 2,
    ColumnKind.INT: 4,
    ColumnKind.BIG_INT: 8,
}
TIMESTAMP_BYTES = 5
VARIABLE_TEXT_POINTER_BYTES = 10


@dataclass(frozen=True)
class ColumnType:
    name: str
    kind: ColumnKind
    length: Optional[int] = None  # only for SHORT_TEXT
    nullable: bool = True

    def describe(self) -> str:
        if self.kind is ColumnKind.SHORT_TEXT:
            return f"{self.kind.value}({self.length})"
        return self.kind.value

    def row_bytes(self, bytes_per_char: int) -> int:
        if self.kind in INTEGER_BYTES:
            return INTEGER_BYTES[self.kind]
        if self.kind is ColumnKind.TIMESTAMP:
            return TIMESTAMP_BYTES
        if self.kind is ColumnKind.SHORT_TEXT:
            # varchar: declared chars * max bytes per char + 2-byte length prefix
            return int(self.length or 0) * bytes_per_char + 2
        return VARIABLE_TEXT_POINTER_BYTES


def widened_kind(existing: ColumnType, inferred: ColumnType) -> Optional[ColumnType]:
    """Return the column type ``existing`` must grow into to hold ``inferred`` values.

    None means the existing declaration already fits. The result is never
    narrower than ``existing``.
    """
    ek, ik = existing.kind, inferred.kind

    if ek.family is Family.TEXT:
        if ik.family is not Family.TEXT:
            # any scalar is representable as text of the existing width or larger
            return None
        return _wider_text(existing, inferred)

    if ek.family is Family.INTEGER and ik.family is Family.INTEGER:
        if _INTEGER_ORDER.index(ik) > _INTEGER_ORDER.index(ek):
            return ColumnType(existing.name, ik)
        return None

    if ek.family is ik.family:
        return None

    # Cross-family (integer <-> timestamp, or a non-text column receiving text):
    # text holds both renderings; 50 chars covers any int64 or datetime literal.
    if ik.family is Family.TEXT:
        return ColumnType(existing.name, ik, inferred.length)
    return ColumnType(existing.name, ColumnKind.SHORT_TEXT, 255)


def _wider_text(existing: ColumnType, inferred: ColumnType) -> Optional[ColumnType]:
    e_rank = _TEXT_ORDER.index(existing.kind)
    i_rank = _TEXT_ORDER.index(inferred.kind)
    if i_rank > e_rank:
        return ColumnType(existing.name, inferred.kind, inferred.length)
    if i_rank == e_rank and existing.kind is ColumnKind.SHORT_TEXT:
        if int(inferred.length or 0) > int(existing.length or 0):
            return ColumnType(existing.name, ColumnKind.SHORT_TEXT, inferred.length)
    return None


# ---------------------------------------------------------------------------
# Value classification (pure; no storage knowledge)
# ---------------------------------------------------------------------------

ISO_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{1,6})?Z?\Z")
NATIVE_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\Z")
INTEGER_RE = re.compile(r"^-?\d+\Z")


@dataclass(frozen=True)
class IntegerClass:
    value: int


@dataclass(frozen=True)
class TimestampClass:
    literal: str


@dataclass(frozen=True)
class TextClass:
    length: int


ValueClass = Union[IntegerClass, TimestampClass, TextClass]


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def classify_value(value: Any) -> Optional[ValueClass]:
    """Classify one scalar. Returns None for null/empty values."""
    if is_empty(value):
        return None
    if isinstance(value, bool):
        return IntegerClass(int(value))
    if isinstance(value, int):
        return IntegerClass(value)
    if isinstance(value, str):
        if INTEGER_RE.match(value):
            return IntegerClass(int(value))
        if ISO_DATETIME_RE.match(value) or NATIVE_DATETIME_RE.match(value):
            return TimestampClass(value)
        return TextClass(len(value))
    # floats and anything else are stored as their text rendering
    return TextClass(len(str(value)))


def integer_kind_for(value: int, thresholds) -> Optional[ColumnKind]:
    """Smallest signed integer kind holding ``value``; None when it exceeds 64 bits."""
    for bound, kind in zip(thresholds, _INTEGER_ORDER):
        if -bound - 1 <= value <= bound:
            return kind
    return None
