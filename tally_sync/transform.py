"""
Field transformation: raw Tally strings to typed column values.

Each declared field type has one coercer in ``COERCERS``. Coercion never
raises; unparseable values fall back to a default (0 for numbers, None for
dates) and are counted in ``CoercionStats`` so silent data loss shows up in
sync results.
"""
from __future__ import annotations
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Iterable, Optional, Union
from loguru import logger

from .models import FieldType, TableSpec
from .parsers.base import normalize

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_LEADING_NUMBER_RE = re.compile(r"^[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?")

# Tally renders negatives with a "(-)" prefix or a unicode minus
_SIGN_ARTIFACTS = ("(-)", "\u2212")

# Tally's Yes/No display tokens on XML exports
_DISPLAY_BOOLEANS = {"yes": "1", "no": "0"}

# (value, fell_back_to_default)
Coerced = tuple[Any, bool]


@dataclass
class CoercionStats:
    """Per-column count of values that could not be coerced."""

    counts: Counter = field(default_factory=Counter)

    def record(self, column: str) -> None:
        self.counts[column] += 1

    @property
    def total(self) -> int:
        return sum(self.counts.values())


def _clean_number(s: str) -> str:
    s = s.strip().replace(",", "")
    for artifact in _SIGN_ARTIFACTS:
        s = s.replace(artifact, "-")
    s = s.strip()
    if s.startswith("(") and s.endswith(")"):
        s = "-" + s[1:-1].strip()
    return s.replace("- ", "-")


def _number(value: Any, lenient: bool = False) -> Coerced:
    if value is None:
        return None, False
    if isinstance(value, bool):
        return float(value), False
    if isinstance(value, (int, float)):
        return float(value), False
    s = _clean_number(normalize(value))
    if not s:
        return 0.0, False
    try:
        return float(s), False
    except ValueError:
        pass
    if lenient:
        # Quantities and rates carry units: "10 Nos", "250.00/Nos"
        match = _LEADING_NUMBER_RE.match(s)
        if match:
            return float(match.group(0)), False
    return 0.0, True


def coerce_text(value: Any) -> Coerced:
    if value is None:
        return "", False
    return normalize(value), False


def coerce_logical(value: Any) -> Coerced:
    if isinstance(value, bool):
        return value, False
    if value is None:
        return False, False
    token = normalize(value).lower()
    return token in ("1", "true"), False


def coerce_number(value: Any) -> Coerced:
    return _number(value)


def coerce_measure(value: Any) -> Coerced:
    return _number(value, lenient=True)


def coerce_date(value: Any) -> Coerced:
    if value is None:
        return None, False
    if isinstance(value, datetime):
        return value.date().isoformat(), False
    if isinstance(value, date):
        return value.isoformat(), False
    s = normalize(value)
    if ISO_DATE_RE.match(s):
        return s, False
    return None, bool(s)


COERCERS: dict[FieldType, Callable[[Any], Coerced]] = {
    FieldType.TEXT: coerce_text,
    FieldType.LOGICAL: coerce_logical,
    FieldType.DATE: coerce_date,
    FieldType.NUMBER: coerce_number,
    FieldType.AMOUNT: coerce_number,
    FieldType.QUANTITY: coerce_measure,
    FieldType.RATE: coerce_measure,
}


def _field_type(ftype: Union[FieldType, str, None]) -> FieldType:
    if isinstance(ftype, FieldType):
        return ftype
    try:
        return FieldType(str(ftype).lower())
    except ValueError:
        return FieldType.TEXT


def coerce(value: Any, ftype: Union[FieldType, str, None] = FieldType.TEXT) -> Any:
    """
    Coerce one raw value to its declared type.

    Unknown or missing types are treated as text. Re-coercing an already
    coerced value returns it unchanged.
    """
    return COERCERS[_field_type(ftype)](value)[0]


def transform_record(
    raw: dict[str, Optional[str]],
    table: TableSpec,
    by_tag: bool = False,
    stats: Optional[CoercionStats] = None,
) -> dict[str, Any]:
    """
    Map one raw record onto the table's typed columns.

    Args:
        raw: Record keyed by column name (delimited path) or by XML tag
        table: Table being synced
        by_tag: Read values by each field's source tag. Absent non-text
            values are omitted rather than defaulted, and Yes/No display
            tokens are accepted for logical fields.
        stats: Optional counter for values that fell back to a default
    """
    record: dict[str, Any] = {}
    for spec in table.fields:
        key = spec.source_tag if by_tag else spec.name
        value = raw.get(key)
        if by_tag:
            if value is None and spec.type != FieldType.TEXT:
                continue
            if spec.type == FieldType.LOGICAL and isinstance(value, str):
                value = _DISPLAY_BOOLEANS.get(value.strip().lower(), value)

        result, defaulted = COERCERS[spec.type](value)
        if defaulted:
            if stats is not None:
                stats.record(f"{table.name}.{spec.name}")
            logger.debug(f"{table.name}.{spec.name}: could not coerce {value!r} as {spec.type.value}")
        record[spec.name] = result
    return record


def transform_records(
    raws: Iterable[dict[str, Optional[str]]],
    table: TableSpec,
    by_tag: bool = False,
    stats: Optional[CoercionStats] = None,
) -> list[dict[str, Any]]:
    """Transform a list of raw records and derive detail guids where needed."""
    records = [transform_record(raw, table, by_tag=by_tag, stats=stats) for raw in raws]
    return derive_detail_guids(records, table)


def derive_detail_guids(records: list[dict[str, Any]], table: TableSpec) -> list[dict[str, Any]]:
    """
    Give detail rows a stable guid of ``<parent guid>/<ordinal>``.

    Only applies to nested collections that declare no guid column. Rows
    without a parent guid are left without one and get rejected downstream.
    Rows are only ever upserted, so when an edited parent loses entries its
    trailing ordinals stay stored until the table is resynced from empty.
    """
    parent_key = table.parent_key
    if not table.is_detail or table.get_field("guid") is not None or not parent_key:
        return records

    ordinals: Counter = Counter()
    for record in records:
        parent = record.get(parent_key)
        if parent:
            ordinals[parent] += 1
            record["guid"] = f"{parent}/{ordinals[parent]}"
    return records
