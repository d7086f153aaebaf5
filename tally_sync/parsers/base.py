"""
Base utilities for XML parsing.

Provides common functions for reading Tally responses including:
- XML sanitization
- Value normalization
- Display date conversion
- Element flattening
"""
from __future__ import annotations
import re
from datetime import datetime
from typing import Any, Optional
from lxml import etree
from loguru import logger

# Runs of whitespace or control characters collapse to a single space
_NOISE_RE = re.compile(r"[\s\x00-\x1f\x7f]+")
_XML_DECL_RE = re.compile(r"^\s*<\?xml[^>]*\?>", re.IGNORECASE)

DATE_FORMATS = (
    "%Y%m%d",      # 20240401
    "%Y-%m-%d",    # 2024-04-01
    "%d-%b-%Y",    # 1-Apr-2024
    "%d-%b-%y",    # 1-Apr-24
)


def sanitize_xml(xml_text: str) -> str:
    """
    Remove invalid XML characters and fix common issues.

    Tally sometimes produces XML with control characters, invalid character
    references (``&#4;``) or bare ampersands. This cleans those up for safe
    parsing.
    """
    if not xml_text:
        return xml_text

    xml_text = xml_text.replace("\x00", "").lstrip("\ufeff")

    # Numeric references to control chars other than tab, newline and CR
    xml_text = re.sub(r"&#([0-8]|1[0-2]|1[4-9]|2[0-9]|3[01]);", "", xml_text)
    xml_text = re.sub(r"&#x([0-8bBcCeEfF]|1[0-9a-fA-F]);", "", xml_text)

    # XML 1.0 only allows #x9 | #xA | #xD | [#x20-#xD7FF] | [#xE000-#xFFFD]
    xml_text = "".join(
        c if (
            c in "\t\n\r" or
            0x20 <= ord(c) <= 0xD7FF or
            0xE000 <= ord(c) <= 0xFFFD
        ) else ""
        for c in xml_text
    )

    # Unescaped ampersands (but not valid entities)
    xml_text = re.sub(r"&(?!(amp|lt|gt|apos|quot|#\d+|#x[\da-fA-F]+);)", "&amp;", xml_text)

    return xml_text


def parse_document(xml_text: str) -> etree._Element:
    """
    Parse a Tally response into an element tree.

    The XML declaration is dropped because the text has already been decoded;
    lxml refuses str input that still declares an encoding.

    Raises:
        etree.XMLSyntaxError: If the document is not well-formed
    """
    cleaned = _XML_DECL_RE.sub("", sanitize_xml(xml_text), count=1)
    parser = etree.XMLParser(huge_tree=True, remove_comments=True, resolve_entities=False)
    return etree.fromstring(cleaned.strip().encode("utf-8"), parser)


def normalize(value: Any) -> Optional[str]:
    """
    Collapse whitespace/control runs to one space and trim.

    Idempotent: normalizing an already clean string returns it unchanged.
    ``None`` stays ``None`` so callers can tell absent from empty.
    """
    if value is None:
        return None
    return _NOISE_RE.sub(" ", str(value)).strip()


def tally_date_to_iso(s: Optional[str]) -> Optional[str]:
    """
    Convert a Tally display date to ``YYYY-MM-DD``.

    Returns None when the value is not a recognized date.
    """
    if not s:
        return None
    s = s.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def tag_name(element: etree._Element) -> Optional[str]:
    """Element tag as a string, None for processing instructions and entities."""
    tag = element.tag
    return tag if isinstance(tag, str) else None


def is_leaf(element: etree._Element) -> bool:
    return not any(tag_name(child) for child in element)


def flatten_element(element: etree._Element) -> dict[str, str]:
    """
    Flatten one entity node into a tag -> value mapping.

    Attributes and leaf children both contribute; Tally encodes the same
    logical field either way (``<GROUP NAME="X">`` vs ``<NAME>X</NAME>``).
    Element text wins unless it is empty and an attribute already supplied a
    value. Repeated leaves keep the first occurrence.
    """
    record: dict[str, str] = {}
    for key, value in element.attrib.items():
        record[str(key).upper()] = normalize(value)

    seen = set()
    for child in element:
        tag = tag_name(child)
        if not tag or tag in seen or not is_leaf(child):
            continue
        seen.add(tag)
        value = normalize(child.text or "")
        if value or tag not in record:
            record[tag] = value
    return record


def convert_display_dates(record: dict[str, Optional[str]]) -> dict[str, Optional[str]]:
    """Rewrite values of ``*DATE`` tags from Tally display formats to ISO."""
    for key, value in record.items():
        if key.endswith("DATE") and value:
            iso = tally_date_to_iso(value)
            if iso:
                record[key] = iso
            else:
                logger.debug(f"Leaving unrecognized date {key}={value!r} as is")
    return record
