"""
normalize.py - Field and header normalization.

Core normalizers:
    normalize_field(value)        -> trimmed string, never None
    normalize_header(header)      -> canonical CSV header text
    normalize_operator_input(val) -> trimmed operator edit

Design principles:
    - SAME normalization on BOTH sides (grid cells and file cells)
    - Pure transformations, no I/O
    - Absent or invalid input degrades to the empty string
"""

from __future__ import annotations

import math
import re
import unicodedata
from typing import Any

from logging_config import get_logger

logger = get_logger(__name__)

# Characters the grid renders as whitespace inside cell text.
_SPACE_LIKE = {
    "\u00a0": " ",
    "\u2007": " ",
    "\u202f": " ",
    "\ufeff": "",
}

_QUOTE_EDGES = re.compile(r'(^"|"$)')
_MULTI_SPACE = re.compile(r"\s+")


def normalize_field(value: Any) -> str:
    """Normalize a single record field to a trimmed string.

    None, NaN and empty values become "". Unicode is NFC-normalized so a value
    typed in a spreadsheet compares equal to the same text read from the grid.
    """
    if value is None:
        return ""

    if isinstance(value, float) and math.isnan(value):
        return ""

    if not isinstance(value, str):
        try:
            value = str(value)
        except Exception as exc:
            logger.debug(
                "normalize_field_warning | type=%s | error=%s | fallback=''",
                type(value).__name__,
                exc,
            )
            return ""

    text = unicodedata.normalize("NFC", value)
    for source, target in _SPACE_LIKE.items():
        text = text.replace(source, target)
    return text.strip()


def normalize_header(header: Any) -> str:
    """Normalize a CSV header cell: strip edge quotes and collapse whitespace."""
    text = normalize_field(header)
    text = _QUOTE_EDGES.sub("", text).strip()
    return _MULTI_SPACE.sub(" ", text)


def normalize_operator_input(value: Any) -> str:
    """Normalize an operator edit (task status or technician comments)."""
    return normalize_field(value)
