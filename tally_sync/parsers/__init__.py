"""
Response parsing for Tally replies.

This module contains:
- XML sanitization and value normalization helpers
- The delimited-field tokenizer for generated TDL reports
- Shape classification and record extraction
"""

from .base import sanitize_xml, parse_document, normalize, tally_date_to_iso
from .delimited import NULL_PLACEHOLDER, parse_delimited, process_tdl_output
from .shapes import (
    Extraction,
    ResponseShape,
    classify_response,
    extract_records,
)

__all__ = [
    "sanitize_xml",
    "parse_document",
    "normalize",
    "tally_date_to_iso",
    "NULL_PLACEHOLDER",
    "parse_delimited",
    "process_tdl_output",
    "Extraction",
    "ResponseShape",
    "classify_response",
    "extract_records",
]
