"""score_etl.shared

Shared pieces used by every stage of the score import pipeline:
the exception taxonomy, the per-job ErrorSink, and run-report writing.
"""

from __future__ import annotations

import csv
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Row-level exceptions (recovered per row, never abort a job)
# ---------------------------------------------------------------------------

class RowValidationError(Exception):
    """Base class for errors that reject a single source row."""

    @property
    def reason(self) -> str:
        return str(self)


class ColumnMismatch(RowValidationError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Column count mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class MissingKey(RowValidationError):
    def __init__(self) -> None:
        super().__init__("Missing SBD")


class ScoreOutOfRange(RowValidationError):
    def __init__(self, raw: str) -> None:
        super().__init__(f"Score out of range: {raw}")
        self.raw = raw


# ---------------------------------------------------------------------------
# Fatal exceptions (abort the import, job -> FAILED)
# ---------------------------------------------------------------------------

class IngestError(Exception):
    """Base class for errors that abort a whole import."""


class SourceUnreadable(IngestError):
    pass


class SourceTruncated(IngestError):
    def __init__(self, checkpoint: int, rows_available: int) -> None:
        super().__init__(
            f"checkpoint line {checkpoint} exceeds the file's "
            f"{rows_available} data rows"
        )
        self.checkpoint = checkpoint
        self.rows_available = rows_available


class ImportAlreadyInProgress(IngestError):
    def __init__(self, job_id: int, status: str) -> None:
        super().__init__(
            f"Import already in progress for this file (Job ID: {job_id}, status={status})"
        )
        self.job_id = job_id
        self.status = status


class ChunkCommitFailed(IngestError):
    def __init__(self, first_line: int, last_line: int, attempts: int, cause: BaseException) -> None:
        super().__init__(
            f"chunk lines {first_line}-{last_line} failed after {attempts} attempts: "
            f"{type(cause).__name__}: {cause}"
        )
        self.first_line = first_line
        self.last_line = last_line
        self.attempts = attempts


class JobNotFound(IngestError):
    pass


class JobNotResumable(IngestError):
    pass


class FingerprintMismatch(IngestError):
    pass


class InvalidJobTransition(IngestError):
    pass


class CheckpointRegression(IngestError):
    pass


# ---------------------------------------------------------------------------
# ErrorSink
# ---------------------------------------------------------------------------

ERROR_FIELDS = ["line_number", "raw_data", "error_reason"]


class ErrorSink:
    """Append-only CSV of rejected rows, one file per import job.

    Every write opens the file, appends one record and closes it again, so
    nothing is buffered and a crash never loses records already written.
    """

    def __init__(self, errors_dir: Path, job_id: int) -> None:
        self._path = errors_dir / f"import_errors_{job_id}.csv"
        self.written = 0

    @property
    def path(self) -> Path:
        return self._path

    def open(self, checkpoint: int = 0) -> None:
        """Create the file with its header, or reopen it for a resumed job.

        Records past `checkpoint` were written for a chunk that never
        committed. That chunk is replayed after resume, so they are dropped
        here and written again exactly once. The file is streamed record by
        record, never loaded whole.
        """
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("w", newline="", encoding="utf-8") as fh:
                csv.writer(fh).writerow(ERROR_FIELDS)
            return

        with self._path.open(newline="", encoding="utf-8") as fh:
            reader = csv.reader(fh)
            next(reader, None)
            if not any(r and int(r[0]) > checkpoint for r in reader):
                return

        dropped = 0
        tmp_path = self._path.with_suffix(".csv.tmp")
        with self._path.open(newline="", encoding="utf-8") as src, \
                tmp_path.open("w", newline="", encoding="utf-8") as dst:
            reader = csv.reader(src)
            writer = csv.writer(dst)
            next(reader, None)
            writer.writerow(ERROR_FIELDS)
            for record in reader:
                if not record:
                    continue
                if int(record[0]) > checkpoint:
                    dropped += 1
                    continue
                writer.writerow(record)
        tmp_path.replace(self._path)
        log.info(
            "%s: dropped %d error records past checkpoint line %d",
            self._path, dropped, checkpoint,
        )

    def write(self, line_number: int, raw_data: str, reason: str) -> None:
        if not self._path.exists():
            self.open()
        with self._path.open("a", newline="", encoding="utf-8") as fh:
            csv.writer(fh).writerow([line_number, raw_data, reason])
        self.written += 1


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    reports_dir: Path,
    job_id: int,
    started_at: str,
    mode: str,
    payload: dict[str, Any],
) -> Path:
    report = {
        "job_id": job_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        **payload,
    }
    report_path = reports_dir / f"{job_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
