"""score_etl.batcher

Chunked, transactional commit of validated score rows.

Per chunk (default 1000 source rows):
  1.  Validate every row (pure). Rejections go straight to the ErrorSink.
  2.  Deduplicate students by sbd and scores by (sbd, subject); last row wins.
  3.  In ONE transaction:
        i.   upsert students
        ii.  resolve sbd -> student.id with one batched lookup
        iii. upsert scores
        iv.  advance processed_rows / error_rows / last_processed_line
  4.  On a transient storage error, retry step 3 with exponential backoff.
  5.  Sleep chunk_pause_seconds after each commit (throttle only).

Because the checkpoint moves in the same transaction as the data, a chunk
is either fully committed and checkpointed or not at all, so replaying a
chunk from scratch can never double count.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from score_etl.ledger import JobLedger
from score_etl.shared import ChunkCommitFailed, ErrorSink, RowValidationError
from score_etl.storage import ScoreRow, StorageGateway
from score_etl.validation import ScoreRecord, StudentRecord, validate_row

log = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff for transient storage errors."""

    max_attempts: int = 3
    backoff_base_seconds: float = 1.0

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return self.backoff_base_seconds * (2 ** (attempt - 1))


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChunkResult:
    first_line: int
    last_line: int
    rows: int
    errors: int
    students_upserted: int
    scores_upserted: int
    attempts: int


@dataclass
class BatchTotals:
    chunks: int = 0
    rows: int = 0
    errors: int = 0
    students_upserted: int = 0
    scores_upserted: int = 0
    retries: int = 0
    results: list[ChunkResult] = field(default_factory=list, repr=False)

    def add(self, result: ChunkResult) -> None:
        self.chunks += 1
        self.rows += result.rows
        self.errors += result.errors
        self.students_upserted += result.students_upserted
        self.scores_upserted += result.scores_upserted
        self.retries += result.attempts - 1

    def to_dict(self) -> dict[str, int]:
        return {
            "chunks": self.chunks,
            "rows": self.rows,
            "errors": self.errors,
            "students_upserted": self.students_upserted,
            "scores_upserted": self.scores_upserted,
            "retries": self.retries,
        }


# ---------------------------------------------------------------------------
# Chunk helpers
# ---------------------------------------------------------------------------

def dedupe_students(students: Iterable[StudentRecord]) -> list[StudentRecord]:
    """Collapse repeated sbd values; the last occurrence wins."""
    by_key: dict[str, StudentRecord] = {}
    for student in students:
        by_key.pop(student.sbd, None)
        by_key[student.sbd] = student
    return list(by_key.values())


def dedupe_scores(scores: Iterable[ScoreRecord]) -> list[ScoreRecord]:
    """Collapse repeated (sbd, subject) pairs; the last occurrence wins."""
    by_key: dict[tuple[str, int], ScoreRecord] = {}
    for score in scores:
        key = (score.sbd, score.subject_id)
        by_key.pop(key, None)
        by_key[key] = score
    return list(by_key.values())


def raw_row_text(cells: Sequence[str], delimiter: str = ",") -> str:
    return delimiter.join(cells)


# ---------------------------------------------------------------------------
# Batcher
# ---------------------------------------------------------------------------

class ChunkBatcher:
    def __init__(
        self,
        gateway: StorageGateway,
        ledger: JobLedger,
        job_id: int,
        header: Sequence[str],
        subject_map: Mapping[str, int],
        error_sink: ErrorSink,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        retry_policy: RetryPolicy | None = None,
        chunk_pause_seconds: float = 0.01,
        sleep: Callable[[float], None] = time.sleep,
        on_commit: Callable[[ChunkResult], None] | None = None,
        delimiter: str = ",",
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self._gateway = gateway
        self._ledger = ledger
        self._job_id = job_id
        self._header = list(header)
        self._subject_map = dict(subject_map)
        self._errors = error_sink
        self._chunk_size = chunk_size
        self._retry = retry_policy or RetryPolicy()
        self._pause = chunk_pause_seconds
        self._sleep = sleep
        self._on_commit = on_commit
        self._delimiter = delimiter

    def run(self, rows: Iterable[tuple[int, list[str]]]) -> BatchTotals:
        """Consume (line, cells) pairs and commit them chunk by chunk."""
        totals = BatchTotals()
        chunk: list[tuple[int, list[str]]] = []
        for item in rows:
            chunk.append(item)
            if len(chunk) >= self._chunk_size:
                totals.add(self.commit_chunk(chunk))
                chunk = []
        if chunk:
            totals.add(self.commit_chunk(chunk))
        return totals

    def commit_chunk(self, chunk: Sequence[tuple[int, list[str]]]) -> ChunkResult:
        first_line = chunk[0][0]
        last_line = chunk[-1][0]

        students: list[StudentRecord] = []
        scores: list[ScoreRecord] = []
        errors = 0
        for line, cells in chunk:
            try:
                validated = validate_row(cells, self._header, self._subject_map)
            except RowValidationError as exc:
                self._errors.write(line, raw_row_text(cells, self._delimiter), exc.reason)
                errors += 1
                continue
            students.append(validated.student)
            scores.extend(validated.scores)

        unique_students = dedupe_students(students)
        unique_scores = dedupe_scores(scores)

        attempt = 0
        while True:
            attempt += 1
            try:
                scores_written = self._write_chunk(
                    unique_students, unique_scores, len(chunk), errors, last_line,
                )
                break
            except Exception as exc:
                if not self._gateway.is_transient_error(exc):
                    raise
                if attempt >= self._retry.max_attempts:
                    log.error(
                        "job %s: chunk %s-%s failed after %s attempts: %s",
                        self._job_id, first_line, last_line, attempt, exc,
                    )
                    raise ChunkCommitFailed(first_line, last_line, attempt, exc) from exc
                delay = self._retry.delay_after(attempt)
                log.warning(
                    "job %s: transient storage error on chunk %s-%s, retrying in %.1fs "
                    "(attempt %s/%s): %s",
                    self._job_id, first_line, last_line, delay,
                    attempt, self._retry.max_attempts, exc,
                )
                self._sleep(delay)

        result = ChunkResult(
            first_line=first_line,
            last_line=last_line,
            rows=len(chunk),
            errors=errors,
            students_upserted=len(unique_students),
            scores_upserted=scores_written,
            attempts=attempt,
        )
        if self._on_commit is not None:
            self._on_commit(result)
        if self._pause > 0:
            self._sleep(self._pause)
        return result

    def _write_chunk(
        self,
        students: Sequence[StudentRecord],
        scores: Sequence[ScoreRecord],
        row_count: int,
        error_count: int,
        last_line: int,
    ) -> int:
        with self._gateway.transaction():
            self._gateway.upsert_students(students)
            student_ids = self._gateway.find_student_ids_by_natural_keys(
                {s.sbd for s in scores}
            )
            score_rows: list[ScoreRow] = [
                (student_ids[s.sbd], s.subject_id, s.score)
                for s in scores
                if s.sbd in student_ids
            ]
            written = self._gateway.upsert_scores(score_rows)
            self._ledger.record_chunk(self._job_id, row_count, error_count, last_line)
        return written
