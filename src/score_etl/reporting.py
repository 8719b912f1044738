"""score_etl.reporting

Read-only reports over committed student/score data.

Reports:
    score_distribution  -- per subject, count of scores in four bands:
                           excellent (>= 8), good ([6, 8)), average ([4, 6)),
                           weak (< 4)
    top_by_composite    -- students ranked by group_a_score (toan + vat_li +
                           hoa_hoc), NULL composites excluded
    find_student        -- one student with every subject score, by sbd

Chunk commits are all-or-nothing, so a report never sees half a chunk and
results can be cached for a bounded time with ReportCache.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import psycopg

DEFAULT_TTL_SECONDS = 3600
DEFAULT_TOP_LIMIT = 10


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def score_distribution(conn: psycopg.Connection) -> dict[str, dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT
          sub.key,
          sub.name,
          count(sc.id) FILTER (WHERE sc.score >= 8)                   AS excellent,
          count(sc.id) FILTER (WHERE sc.score >= 6 AND sc.score < 8)  AS good,
          count(sc.id) FILTER (WHERE sc.score >= 4 AND sc.score < 6)  AS average,
          count(sc.id) FILTER (WHERE sc.score < 4)                    AS weak
        FROM subject sub
        LEFT JOIN score sc ON sc.subject_id = sub.id
        GROUP BY sub.id, sub.key, sub.name
        ORDER BY sub.id
        """
    ).fetchall()
    return {
        key: {
            "subject_name": name,
            "excellent": excellent,
            "good": good,
            "average": average,
            "weak": weak,
        }
        for key, name, excellent, good, average, weak in rows
    }


def _scores_by_student(conn: psycopg.Connection, student_ids: list[int]) -> dict[int, dict[str, Decimal]]:
    if not student_ids:
        return {}
    rows = conn.execute(
        """
        SELECT sc.student_id, sub.key, sc.score
        FROM score sc
        JOIN subject sub ON sub.id = sc.subject_id
        WHERE sc.student_id = ANY(%s::bigint[])
        ORDER BY sc.student_id, sub.id
        """,
        (student_ids,),
    ).fetchall()
    out: dict[int, dict[str, Decimal]] = {sid: {} for sid in student_ids}
    for student_id, key, score in rows:
        out[student_id][key] = score
    return out


def top_by_composite(conn: psycopg.Connection, limit: int = DEFAULT_TOP_LIMIT) -> list[dict[str, Any]]:
    if limit < 1:
        raise ValueError("limit must be >= 1")
    students = conn.execute(
        """
        SELECT id, sbd, group_a_score
        FROM student
        WHERE group_a_score IS NOT NULL
        ORDER BY group_a_score DESC, sbd ASC
        LIMIT %s
        """,
        (limit,),
    ).fetchall()
    scores = _scores_by_student(conn, [int(r[0]) for r in students])
    return [
        {
            "rank": rank,
            "sbd": sbd,
            "group_a_score": group_a,
            "scores": scores.get(int(student_id), {}),
        }
        for rank, (student_id, sbd, group_a) in enumerate(students, start=1)
    ]


def find_student(conn: psycopg.Connection, sbd: str) -> dict[str, Any] | None:
    row = conn.execute(
        "SELECT id, sbd, ma_ngoai_ngu, group_a_score FROM student WHERE sbd = %s",
        (sbd.strip(),),
    ).fetchone()
    if row is None:
        return None
    student_id, found_sbd, lang, group_a = row
    return {
        "sbd": found_sbd,
        "ma_ngoai_ngu": lang,
        "group_a_score": group_a,
        "scores": _scores_by_student(conn, [int(student_id)]).get(int(student_id), {}),
    }


# ---------------------------------------------------------------------------
# TTL cache
# ---------------------------------------------------------------------------

@dataclass
class _CacheEntry:
    value: Any
    expires_at: float


@dataclass
class ReportCache:
    """Process-local cache with a fixed time-to-live per entry."""

    ttl_seconds: float = DEFAULT_TTL_SECONDS
    clock: Callable[[], float] = time.monotonic
    _entries: dict[str, _CacheEntry] = field(default_factory=dict, init=False, repr=False)

    def remember(self, key: str, compute: Callable[[], Any]) -> Any:
        now = self.clock()
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at > now:
            return entry.value
        value = compute()
        self._entries[key] = _CacheEntry(value=value, expires_at=now + self.ttl_seconds)
        return value

    def invalidate(self, key: str | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ReportService:
    """Report queries bound to one connection, aggregate reports cached."""

    def __init__(self, conn: psycopg.Connection, cache: ReportCache | None = None) -> None:
        self._conn = conn
        self._cache = cache if cache is not None else ReportCache()

    def distribution(self) -> dict[str, dict[str, Any]]:
        return self._cache.remember(
            "score_distribution", lambda: score_distribution(self._conn)
        )

    def top_group_a(self, limit: int = DEFAULT_TOP_LIMIT) -> list[dict[str, Any]]:
        return self._cache.remember(
            f"top_group_a:{limit}", lambda: top_by_composite(self._conn, limit)
        )

    def student(self, sbd: str) -> dict[str, Any] | None:
        return find_student(self._conn, sbd)
