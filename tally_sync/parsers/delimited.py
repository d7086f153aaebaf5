"""
Parser for the delimited-field form produced by generated TDL reports.

Tally renders each exported line as positional ``<F01>..<Fnn>`` tags inside a
flat ``<ENVELOPE>``. The markup is rewritten into newline/tab delimited text,
a header row of column names is prefixed, and the result is tokenized.
"""
from __future__ import annotations
import re
from typing import Iterable, Optional
from xml.sax.saxutils import unescape
from loguru import logger

from .base import normalize

# Tally's null token for empty dates and similar values
NULL_PLACEHOLDER = chr(241)

ROW_DELIMITER = "\n"
COLUMN_DELIMITER = "\t"

_ENTITIES = {"&apos;": "'", "&quot;": '"'}


def process_tdl_output(content: str) -> str:
    """
    Convert a positional-field envelope into delimited text.

    ``<F01>`` starts a new row and every other ``<Fnn>`` starts a new column,
    so the output begins with a row delimiter.
    """
    text = content.lstrip("\ufeff")
    text = re.sub(r"<\?xml[^>]*\?>", "", text)
    text = text.replace("<ENVELOPE>", "").replace("</ENVELOPE>", "")
    text = re.sub(r"<FLDBLANK>\s*</FLDBLANK>|<FLDBLANK\s*/>", "", text)
    text = re.sub(r"[\r\n]", "", text)
    text = text.replace("\t", " ")
    text = re.sub(r"\s+(?=<F\d+>)", "", text)
    text = re.sub(r"</F\d+>", "", text)
    text = text.replace("<F01>", ROW_DELIMITER)
    text = re.sub(r"<F\d+>", COLUMN_DELIMITER, text)
    text = text.replace("&#241;", NULL_PLACEHOLDER)
    text = re.sub(r"&#\d+;", "", text)
    return unescape(text, _ENTITIES)


def clean_token(token: str) -> Optional[str]:
    """Null for the placeholder token and whitespace-only tokens."""
    if token.strip() == NULL_PLACEHOLDER or (token and not token.strip()):
        return None
    return normalize(token)


def parse_delimited(
    text: str,
    columns: Iterable[str],
    key: Optional[str] = "guid",
) -> list[dict[str, Optional[str]]]:
    """
    Tokenize delimited text into records keyed by column name.

    Args:
        text: Row/column delimited text (see ``process_tdl_output``)
        columns: Column names in field order
        key: Column that must carry a usable value; rows without it are
            discarded. None keeps every non-blank row.

    Returns:
        List of raw records (values are strings or None)
    """
    header = COLUMN_DELIMITER.join(columns)
    table = [line.split(COLUMN_DELIMITER) for line in f"{header}{ROW_DELIMITER}{text}".split(ROW_DELIMITER)]
    names = table[0]
    check_key = key if key in names else None

    records = []
    dropped = 0
    for tokens in table[1:]:
        if not any(t.strip() for t in tokens):
            continue
        if len(tokens) > len(names):
            logger.debug(f"Row has {len(tokens)} tokens for {len(names)} columns, extra ignored")
        record = {
            name: clean_token(tokens[i]) if i < len(tokens) else None
            for i, name in enumerate(names)
        }
        if check_key and not record.get(check_key):
            dropped += 1
            continue
        records.append(record)

    if dropped:
        logger.debug(f"Discarded {dropped} delimited rows without {check_key}")
    return records
