"""
Request builder for the Tally XML interface.

Two kinds of requests are produced:

- report references: a minimal envelope naming a report Tally already knows
  (Day Book, List of Accounts, Stock Summary, ...)
- declarative exports: a self-describing TDL report generated from a
  TableSpec, one PART/LINE per collection segment, with one field per column

Rendering is pure; identical inputs always produce identical XML.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional, Union
from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .models import FieldSpec, FieldType, TableSpec
from .requests import TEMPLATE_DIR, TEMPLATES

DateLike = Union[date, str, None]

EXPORT_REPORT_NAME = "TallySyncReport"
DEFAULT_CHANGE_FIELD = "AlterID"

# Friendly names for reports predefined in Tally
REPORTS = {
    "DayBook": "Day Book",
    "Ledger": "List of Accounts",
    "Group": "List of Groups",
    "StockItem": "List of Stock Items",
    "VoucherType": "List of Voucher Types",
    "StockSummary": "Stock Summary",
    "GroupSummary": "Group Summary",
    "TrialBalance": "Trial Balance",
}


def xml_escape(value: object) -> str:
    """Escape text for element content. Quotes stay literal for TDL formulae."""
    return (
        str(value)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
    )


_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    trim_blocks=True,
    lstrip_blocks=True,
    autoescape=False,
    undefined=StrictUndefined,
)
_env.filters["xml"] = xml_escape


def tally_date(value: DateLike) -> Optional[str]:
    """Format a date as YYYYMMDD (accepts date objects, ISO or YYYYMMDD strings)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return value.strftime("%Y%m%d")
    s = str(value).strip()
    if len(s) == 8 and s.isdigit():
        return s
    return date.fromisoformat(s).strftime("%Y%m%d")


# Expression builders, keyed by field type. ``f`` is a plain attribute name.
def _text_expression(f: str) -> str:
    return f"${f}"


def _logical_expression(f: str) -> str:
    return f"if ${f} then 1 else 0"


def _date_expression(f: str) -> str:
    # char code 241 marks an empty date; the delimited parser maps it to null
    return f'if $$IsEmpty:${f} then $$StrByCharCode:241 else $$PyrlYYYYMMDDFormat:${f}:"-"'


def _number_expression(f: str) -> str:
    return f'if $$IsEmpty:${f} then "0" else $$String:${f}'


def _amount_expression(f: str) -> str:
    return (
        f'$$StringFindAndReplace:(if $$IsDebit:${f} then -$$NumValue:${f} '
        f'else $$NumValue:${f}):"(-)":"-"'
    )


def _quantity_expression(f: str) -> str:
    return (
        f'$$StringFindAndReplace:(if $$IsInwards:${f} then $$Number:$$String:${f}:"TailUnits" '
        f'else -$$Number:$$String:${f}:"TailUnits"):"(-)":"-"'
    )


def _rate_expression(f: str) -> str:
    return f"if $$IsEmpty:${f} then 0 else $$Number:${f}"


EXPRESSION_BUILDERS: dict[FieldType, Callable[[str], str]] = {
    FieldType.TEXT: _text_expression,
    FieldType.LOGICAL: _logical_expression,
    FieldType.DATE: _date_expression,
    FieldType.NUMBER: _number_expression,
    FieldType.AMOUNT: _amount_expression,
    FieldType.QUANTITY: _quantity_expression,
    FieldType.RATE: _rate_expression,
}


def field_expression(spec: FieldSpec) -> str:
    """TDL expression for one field; non-identifier expressions pass through."""
    if not spec.is_identifier:
        return spec.field
    return EXPRESSION_BUILDERS.get(spec.type, _text_expression)(spec.field)


@dataclass(frozen=True)
class _Level:
    part: str
    line: str
    route: str
    explode: Optional[str]


@dataclass(frozen=True)
class _Field:
    id: str
    tag: str
    expression: str


@dataclass(frozen=True)
class _Filter:
    id: str
    expression: str


def _levels(table: TableSpec) -> list[_Level]:
    segments = table.segments
    levels = []
    for i, segment in enumerate(segments, start=1):
        levels.append(
            _Level(
                part=f"MyPart{i:02d}",
                line=f"MyLine{i:02d}",
                route="MyCollection" if i == 1 else segment,
                explode=f"MyPart{i + 1:02d}" if i < len(segments) else None,
            )
        )
    return levels


def change_filter(changed_since: int, change_field: str = DEFAULT_CHANGE_FIELD) -> str:
    """Filter formula selecting entities altered after ``changed_since``."""
    return f"${change_field} > {int(changed_since)}"


def build_report_request(
    report: str,
    company: str,
    from_date: DateLike = None,
    to_date: DateLike = None,
    explode: bool = False,
) -> str:
    """
    Build a request referencing a report predefined in Tally.

    Args:
        report: Report id or a key of REPORTS (e.g. "DayBook")
        company: SVCURRENTCOMPANY value
        from_date: Optional start of the period
        to_date: Optional end of the period
        explode: Ask Tally for the detailed (exploded) report
    """
    template = _env.get_template(TEMPLATES["report"])
    return template.render(
        report=REPORTS.get(report, report),
        company=company,
        from_date=tally_date(from_date),
        to_date=tally_date(to_date),
        explode=explode,
    )


def build_export_request(
    table: TableSpec,
    company: str,
    from_date: DateLike = None,
    to_date: DateLike = None,
    changed_since: Optional[int] = None,
    change_field: str = DEFAULT_CHANGE_FIELD,
) -> str:
    """
    Build a self-describing TDL export for a table.

    Fields are emitted in declaration order as Fld01..FldNN with XML tags
    F01..FNN, which is the column order the delimited parser expects.
    ``changed_since`` adds one more filter formula; Tally ANDs all filters
    of a collection.
    """
    fields = [
        _Field(id=f"Fld{i:02d}", tag=f"F{i:02d}", expression=field_expression(spec))
        for i, spec in enumerate(table.fields, start=1)
    ]
    expressions = list(table.filters)
    if changed_since is not None:
        expressions.append(change_filter(changed_since, change_field))
    filters = [_Filter(id=f"Fltr{i:02d}", expression=e) for i, e in enumerate(expressions, start=1)]

    template = _env.get_template(TEMPLATES["tdl_export"])
    return template.render(
        report_name=EXPORT_REPORT_NAME,
        company=company,
        from_date=tally_date(from_date),
        to_date=tally_date(to_date),
        levels=_levels(table),
        fields=fields,
        collection_type=table.segments[0],
        fetch=list(table.fetch),
        filters=filters,
    )


def build_table_request(
    table: TableSpec,
    company: str,
    from_date: DateLike = None,
    to_date: DateLike = None,
    changed_since: Optional[int] = None,
) -> str:
    """Report reference for report-backed tables, declarative export otherwise."""
    if table.report:
        return build_report_request(table.report, company, from_date, to_date)
    return build_export_request(table, company, from_date, to_date, changed_since)


def build_change_cursor_request(company: str) -> str:
    """Request for the company's current master/transaction AlterIDs."""
    return _env.get_template(TEMPLATES["alter_id"]).render(company=company)
