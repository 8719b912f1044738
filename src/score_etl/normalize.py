"""Normalization functions for score CSV ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from score_etl.shared import ScoreOutOfRange

MIN_SCORE = Decimal("0")
MAX_SCORE = Decimal("10")

ABSENT_TOKENS = frozenset({"NA"})

# Plain decimal or scientific notation; rejects "12.5.5", "nan", "inf", "1_0".
_NUMERIC_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_header
# ---------------------------------------------------------------------------

def normalize_header(header: list[str]) -> list[str]:
    """Return header names whitespace-stripped, order preserved."""
    return [h.strip() for h in header]


# ---------------------------------------------------------------------------
# Rule 3: parse_score
# ---------------------------------------------------------------------------

def parse_score(value: str | None) -> Decimal | None:
    """Parse a subject score cell.

    Blank, whitespace-only and "NA" (any case) are absent. Text that does not
    look like a number is also absent rather than an error: a garbled optional
    cell must not reject an otherwise valid row. A numeric value outside
    [0, 10] is impossible and raises ScoreOutOfRange with the raw text.
    """
    v = trim(value)
    if v is None or v.upper() in ABSENT_TOKENS:
        return None
    if not _NUMERIC_RE.match(v):
        return None
    try:
        score = Decimal(v)
    except InvalidOperation:
        return None
    if score < MIN_SCORE or score > MAX_SCORE:
        raise ScoreOutOfRange(value)
    return score
