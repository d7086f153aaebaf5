"""
Response shape classification and record extraction.

Tally answers logically identical requests in several layouts. A response is
first classified into one of a closed set of shapes, then handed to the
extractor registered for that shape:

- MESSAGE: entity nodes under TALLYMESSAGE / COLLECTION / DATA / DAYBOOK
  wrappers, optionally wrapped further in ENVELOPE/BODY or RESPONSE/BODY
- SUMMARY: summary reports with DSPACCNAME name nodes and index-aligned
  auxiliary value arrays
- DELIMITED: positional F01..Fnn field tags from generated TDL reports
- EMPTY: an envelope with no content (or only blank explode fields)
- UNKNOWN: anything else, including unparseable documents
"""
from __future__ import annotations
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Union
from lxml import etree
from loguru import logger

from ..models import TableSpec
from .base import (
    convert_display_dates,
    flatten_element,
    is_leaf,
    normalize,
    parse_document,
    tag_name,
)
from .delimited import parse_delimited, process_tdl_output

RawRecord = dict[str, Optional[str]]
Target = Union[TableSpec, str]

MESSAGE_WRAPPERS = ("TALLYMESSAGE", "COLLECTION", "DATA", "DAYBOOK")

BLANK_FIELD_TAG = "FLDBLANK"

SUMMARY_NAME_TAG = "DSPACCNAME"
SUMMARY_SKIP_TAGS = {SUMMARY_NAME_TAG, "HEADER", "BODY"}

# Display tags of summary reports and the column tags they stand for
SUMMARY_ALIASES = {
    "DSPDISPNAME": "NAME",
    "DSPCLQTY": "QUANTITY",
    "DSPCLRATE": "RATE",
    "DSPCLAMTA": "AMOUNT",
    "DSPCLDRAMTA": "DEBIT",
    "DSPCLCRAMTA": "CREDIT",
    "DSPOPDRAMTA": "OPENING_DEBIT",
    "DSPOPCRAMTA": "OPENING_CREDIT",
}

_DELIMITED_ENVELOPE_RE = re.compile(
    r"^\s*(<\?xml[^>]*\?>)?\s*<ENVELOPE>\s*(<FLDBLANK\s*/?>\s*(</FLDBLANK>)?\s*)*<F\d+>",
    re.IGNORECASE,
)
_SLUG_RE = re.compile(r"[^a-z0-9]+")


class ResponseShape(str, Enum):
    MESSAGE = "message"
    SUMMARY = "summary"
    DELIMITED = "delimited"
    EMPTY = "empty"
    UNKNOWN = "unknown"


@dataclass
class Extraction:
    """Records extracted from one response plus how they were found."""

    shape: ResponseShape
    records: list[RawRecord] = field(default_factory=list)
    diagnostic: Optional[str] = None

    def __len__(self) -> int:
        return len(self.records)

    @property
    def keyed_by_tag(self) -> bool:
        """True when record keys are XML tags rather than column names."""
        return self.shape in (ResponseShape.MESSAGE, ResponseShape.SUMMARY)


@dataclass
class _Classified:
    shape: ResponseShape
    text: str
    root: Optional[etree._Element] = None
    diagnostic: Optional[str] = None


def _classify(document: Optional[str]) -> _Classified:
    text = (document or "").replace("\x00", "").lstrip("\ufeff")
    if not text.strip():
        return _Classified(ResponseShape.EMPTY, text)

    if _DELIMITED_ENVELOPE_RE.match(text):
        return _Classified(ResponseShape.DELIMITED, text)

    if not text.lstrip().startswith("<"):
        # Already tokenized text, e.g. a replayed export
        if "\t" in text or "\n" in text.strip():
            return _Classified(ResponseShape.DELIMITED, text)
        return _Classified(
            ResponseShape.UNKNOWN, text, diagnostic=f"non-XML response: {text.strip()[:80]!r}"
        )

    try:
        root = parse_document(text)
    except (etree.XMLSyntaxError, ValueError) as e:
        return _Classified(ResponseShape.UNKNOWN, text, diagnostic=f"unparseable XML: {e}")

    # Exploded exports whose parents have no child rows leave only FLDBLANK
    tags = {tag_name(child) for child in root} - {None}
    if tags <= {BLANK_FIELD_TAG} and not (root.text or "").strip():
        return _Classified(ResponseShape.EMPTY, text, root)

    if root.find(SUMMARY_NAME_TAG) is not None:
        return _Classified(ResponseShape.SUMMARY, text, root)

    if root.tag in MESSAGE_WRAPPERS or next(root.iter(*MESSAGE_WRAPPERS), None) is not None:
        return _Classified(ResponseShape.MESSAGE, text, root)

    snippet = normalize(etree.tostring(root, encoding="unicode"))[:120]
    return _Classified(
        ResponseShape.UNKNOWN, text, root, diagnostic=f"unrecognized response layout: {snippet}"
    )


def classify_response(document: Optional[str]) -> ResponseShape:
    """Classify a raw Tally response into one of the known shapes."""
    return _classify(document).shape


def _entity_tag(target: Target) -> str:
    return target.entity_tag if isinstance(target, TableSpec) else target.upper()


def _child_lists(node: etree._Element, segment: str) -> list[etree._Element]:
    """
    Children holding one nested collection segment.

    ``AllLedgerEntries`` is exported as ALLLEDGERENTRIES.LIST, but vouchers
    in invoice mode carry some of the same rows as LEDGERENTRIES.LIST.
    """
    tag = segment.upper()
    children = node.findall(f"{tag}.LIST")
    if tag.startswith("ALL"):
        children += node.findall(f"{tag[3:]}.LIST")
    return children


def _descend(node: etree._Element, segments: list[str], inherited: RawRecord) -> list[RawRecord]:
    values = flatten_element(node)
    if not segments:
        return [{**inherited, **values}]
    # Parent values are visible one level down with a ".." prefix
    parent = {f"..{key}": value for key, value in {**inherited, **values}.items()}
    records = []
    for child in _child_lists(node, segments[0]):
        records.extend(_descend(child, segments[1:], parent))
    return records


def _extract_message(classified: _Classified, target: Target) -> Extraction:
    root = classified.root
    tag = _entity_tag(target)
    segments = target.segments[1:] if isinstance(target, TableSpec) else []

    nodes = []
    for node in root.iter(tag):
        parent = node.getparent()
        if node is root or (parent is not None and parent.tag in MESSAGE_WRAPPERS):
            nodes.append(node)

    records = []
    for node in nodes:
        for record in _descend(node, segments, {}):
            records.append(convert_display_dates(record))

    logger.debug(f"Message response: {len(nodes)} {tag} nodes, {len(records)} records")
    return Extraction(ResponseShape.MESSAGE, records)


def _summary_values(element: etree._Element) -> RawRecord:
    if is_leaf(element):
        tag = tag_name(element)
        return {SUMMARY_ALIASES.get(tag, tag): normalize(element.text or "")}
    values: RawRecord = {}
    for leaf in element.iter():
        tag = tag_name(leaf)
        if tag and leaf is not element and is_leaf(leaf):
            values.setdefault(SUMMARY_ALIASES.get(tag, tag), normalize(leaf.text or ""))
    return values


def _extract_summary(classified: _Classified, target: Target) -> Extraction:
    root = classified.root
    entity = _entity_tag(target).lower()

    names = []
    aux: dict[str, list[etree._Element]] = {}
    for child in root:
        tag = tag_name(child)
        if tag == SUMMARY_NAME_TAG:
            names.append(normalize(child.findtext("DSPDISPNAME") or ""))
        elif tag and tag not in SUMMARY_SKIP_TAGS:
            aux.setdefault(tag, []).append(child)

    short = [tag for tag, values in aux.items() if len(values) < len(names)]
    if short:
        logger.debug(f"Summary arrays shorter than name list: {short}")

    records = []
    for index, name in enumerate(names):
        record: RawRecord = {"NAME": name}
        for values in aux.values():
            if index < len(values):
                record.update(_summary_values(values[index]))
        slug = _SLUG_RE.sub("-", name.lower()).strip("-") or str(index)
        record.setdefault("GUID", f"summary-{entity}-{slug}")
        records.append(record)

    return Extraction(ResponseShape.SUMMARY, records)


def _extract_delimited(classified: _Classified, target: Target) -> Extraction:
    text = classified.text
    if text.lstrip().startswith("<"):
        text = process_tdl_output(text)

    if isinstance(target, TableSpec):
        columns = target.field_names
    else:
        width = max((line.count("\t") + 1 for line in text.split("\n")), default=1)
        columns = [f"F{i:02d}" for i in range(1, width + 1)]

    return Extraction(ResponseShape.DELIMITED, parse_delimited(text, columns))


def _extract_empty(classified: _Classified, target: Target) -> Extraction:
    return Extraction(ResponseShape.EMPTY)


def _extract_unknown(classified: _Classified, target: Target) -> Extraction:
    return Extraction(ResponseShape.UNKNOWN, diagnostic=classified.diagnostic)


EXTRACTORS: dict[ResponseShape, Callable[[_Classified, Target], Extraction]] = {
    ResponseShape.MESSAGE: _extract_message,
    ResponseShape.SUMMARY: _extract_summary,
    ResponseShape.DELIMITED: _extract_delimited,
    ResponseShape.EMPTY: _extract_empty,
    ResponseShape.UNKNOWN: _extract_unknown,
}


def extract_records(document: Optional[str], target: Target) -> Extraction:
    """
    Extract raw records from a Tally response.

    Args:
        document: Decoded response text
        target: TableSpec being synced, or a bare entity tag (e.g. "LEDGER")

    Returns:
        Extraction with the detected shape and records. Unrecognized
        responses yield no records and a diagnostic; this never raises.
    """
    classified = _classify(document)
    try:
        extraction = EXTRACTORS[classified.shape](classified, target)
    except (etree.LxmlError, ValueError) as e:
        extraction = Extraction(
            ResponseShape.UNKNOWN, diagnostic=f"failed to extract {classified.shape.value} response: {e}"
        )

    if extraction.shape == ResponseShape.UNKNOWN:
        logger.warning(f"Unrecognized response for {_entity_tag(target)}: {extraction.diagnostic}")
    return extraction
