"""score_etl.validation

Row validation and composite-score derivation.

validate_row() turns one raw CSV row into a StudentRecord plus the
ScoreRecords for every subject that has a score. It is a pure function of
the row, the header and the subject-key -> subject-id map; it never
touches the database.

Composite ("group A") score:
    toan + vat_li + hoa_hoc when all three are present, otherwise None.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from score_etl.normalize import parse_score, trim
from score_etl.shared import ColumnMismatch, MissingKey

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

KEY_COLUMN = "sbd"
LANGUAGE_COLUMN = "ma_ngoai_ngu"

SUBJECT_KEYS = (
    "toan", "ngu_van", "ngoai_ngu", "vat_li", "hoa_hoc",
    "sinh_hoc", "lich_su", "dia_li", "gdcd",
)

COMPOSITE_KEYS = ("toan", "vat_li", "hoa_hoc")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StudentRecord:
    sbd: str
    ma_ngoai_ngu: str | None = None
    group_a_score: Decimal | None = None


@dataclass(frozen=True)
class ScoreRecord:
    sbd: str
    subject_key: str
    subject_id: int
    score: Decimal


@dataclass(frozen=True)
class ValidatedRow:
    student: StudentRecord
    scores: list[ScoreRecord] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_row(
    row: Sequence[str],
    header: Sequence[str],
    subject_map: Mapping[str, int],
) -> ValidatedRow:
    """Validate one row against the header.

    Raises ColumnMismatch, MissingKey or ScoreOutOfRange.
    """
    if len(row) != len(header):
        raise ColumnMismatch(len(header), len(row))

    data = dict(zip(header, row))

    sbd = trim(data.get(KEY_COLUMN))
    if sbd is None:
        raise MissingKey()

    # Composite subjects are always parsed; the rest only when the catalogue
    # knows them.
    parsed: dict[str, Decimal | None] = {
        key: parse_score(data[key])
        for key in SUBJECT_KEYS
        if key in data and (key in COMPOSITE_KEYS or key in subject_map)
    }

    composite_parts = [parsed.get(key) for key in COMPOSITE_KEYS]
    group_a = None
    if all(part is not None for part in composite_parts):
        group_a = sum(composite_parts, Decimal("0"))

    student = StudentRecord(
        sbd=sbd,
        ma_ngoai_ngu=trim(data.get(LANGUAGE_COLUMN)),
        group_a_score=group_a,
    )

    scores = [
        ScoreRecord(sbd=sbd, subject_key=key, subject_id=subject_map[key], score=value)
        for key, value in parsed.items()
        if value is not None and key in subject_map
    ]
    return ValidatedRow(student=student, scores=scores)
