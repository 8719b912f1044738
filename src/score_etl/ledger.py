"""score_etl.ledger

Import job ledger: one import_job row per import attempt, and the state
machine that governs it.

    PENDING ──claim──▶ PROCESSING ──▶ DONE
       │                   │
       └──────▶ FAILED ◀───┘
                  │
                  └──resume──▶ PROCESSING

DONE is final. FAILED is final for every path except an explicit
resume() of that same job row.

Duplicate submissions are refused in the database: a partial unique
index on import_job(file_hash) WHERE status IN ('PENDING', 'PROCESSING')
backs an INSERT ... ON CONFLICT DO NOTHING, so two processes racing on
the same file can never both create a live job.

Progress counters and the checkpoint only move through record_chunk(),
which must run inside the same transaction as the chunk's data writes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from score_etl.shared import (
    CheckpointRegression,
    FingerprintMismatch,
    ImportAlreadyInProgress,
    InvalidJobTransition,
    JobNotFound,
    JobNotResumable,
)

if TYPE_CHECKING:
    from score_etl.storage import StorageGateway

log = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.DONE, JobStatus.FAILED})
ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)

# (from, to) pairs reachable through the normal lifecycle. FAILED -> PROCESSING
# is only reachable through JobLedger.resume().
_TRANSITIONS = {
    (JobStatus.PENDING, JobStatus.PROCESSING),
    (JobStatus.PENDING, JobStatus.FAILED),
    (JobStatus.PROCESSING, JobStatus.DONE),
    (JobStatus.PROCESSING, JobStatus.FAILED),
}


@dataclass(frozen=True)
class ImportJob:
    id: int
    file_path: str
    file_hash: str
    status: JobStatus
    total_rows: int | None
    processed_rows: int
    error_rows: int
    last_processed_line: int
    started_at: datetime | None
    finished_at: datetime | None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "file_path": self.file_path,
            "file_hash": self.file_hash,
            "status": self.status.value,
            "total_rows": self.total_rows,
            "processed_rows": self.processed_rows,
            "error_rows": self.error_rows,
            "last_processed_line": self.last_processed_line,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


def check_transition(current: JobStatus, target: JobStatus) -> None:
    if (current, target) not in _TRANSITIONS:
        raise InvalidJobTransition(f"cannot move job from {current.value} to {target.value}")


class JobLedger:
    """Durable job bookkeeping on top of a StorageGateway."""

    def __init__(self, gateway: StorageGateway) -> None:
        self._gateway = gateway

    # ------------------------------------------------------------------ #
    # Creation                                                             #
    # ------------------------------------------------------------------ #

    def start(self, file_path: Path, fingerprint: str) -> ImportJob:
        """Create a job directly in PROCESSING, or refuse a duplicate."""
        return self._create(file_path, fingerprint, JobStatus.PROCESSING)

    def enqueue(self, file_path: Path, fingerprint: str) -> ImportJob:
        """Create a job in PENDING; a later claim() starts it."""
        return self._create(file_path, fingerprint, JobStatus.PENDING)

    def _create(self, file_path: Path, fingerprint: str, status: JobStatus) -> ImportJob:
        with self._gateway.transaction():
            job_id = self._gateway.insert_job(str(file_path), fingerprint, status)
            if job_id is None:
                existing = self._gateway.find_active_job(fingerprint)
            else:
                job = self._gateway.get_job(job_id)
        if job_id is None:
            if existing is None:
                # The conflicting job finished between the insert and the lookup.
                return self._create(file_path, fingerprint, status)
            raise ImportAlreadyInProgress(existing.id, existing.status.value)
        assert job is not None
        log.info("created import job %s (%s) for %s", job.id, status.value, file_path)
        return job

    # ------------------------------------------------------------------ #
    # Lookup                                                               #
    # ------------------------------------------------------------------ #

    def get(self, job_id: int) -> ImportJob:
        with self._gateway.transaction():
            job = self._gateway.get_job(job_id)
        if job is None:
            raise JobNotFound(f"import job {job_id} does not exist")
        return job

    def find_active(self, fingerprint: str) -> ImportJob | None:
        with self._gateway.transaction():
            return self._gateway.find_active_job(fingerprint)

    # ------------------------------------------------------------------ #
    # Transitions                                                          #
    # ------------------------------------------------------------------ #

    def claim(self, job_id: int) -> ImportJob:
        return self._transition(job_id, JobStatus.PROCESSING)

    def mark_done(self, job_id: int) -> ImportJob:
        return self._transition(job_id, JobStatus.DONE)

    def mark_failed(self, job_id: int) -> ImportJob:
        return self._transition(job_id, JobStatus.FAILED)

    def _transition(self, job_id: int, target: JobStatus) -> ImportJob:
        current = self.get(job_id)
        check_transition(current.status, target)
        return self._apply(current, target)

    def _apply(self, current: ImportJob, target: JobStatus) -> ImportJob:
        with self._gateway.transaction():
            job = self._gateway.transition_job(
                current.id,
                from_status=current.status,
                to_status=target,
                mark_started=current.started_at is None,
            )
        if job is None:
            # Someone else moved the row since we read it.
            latest = self.get(current.id)
            raise InvalidJobTransition(
                f"job {current.id} changed to {latest.status.value} "
                f"before it could move to {target.value}"
            )
        log.info("job %s: %s -> %s", job.id, current.status.value, target.value)
        return job

    def resume(self, job_id: int, fingerprint: str) -> ImportJob:
        """Reattach to an existing job so processing continues after its checkpoint.

        PROCESSING jobs (interrupted runs) are taken as-is, PENDING jobs are
        claimed and FAILED jobs are reopened. DONE jobs cannot be resumed.
        """
        job = self.get(job_id)
        if job.file_hash != fingerprint:
            raise FingerprintMismatch(
                f"job {job_id} was created for a different file content "
                f"({job.file_hash[:12]}... != {fingerprint[:12]}...)"
            )
        if job.status is JobStatus.DONE:
            raise JobNotResumable(f"job {job_id} is already DONE")
        if job.status is JobStatus.PROCESSING:
            return job
        if job.status is JobStatus.PENDING:
            return self._apply(job, JobStatus.PROCESSING)
        # FAILED: the partial unique index still refuses a reopen while a
        # different job holds this fingerprint.
        active = self.find_active(fingerprint)
        if active is not None:
            raise ImportAlreadyInProgress(active.id, active.status.value)
        log.warning("reopening FAILED job %s at checkpoint %s", job_id, job.last_processed_line)
        return self._apply(job, JobStatus.PROCESSING)

    # ------------------------------------------------------------------ #
    # Progress                                                             #
    # ------------------------------------------------------------------ #

    def set_total_rows(self, job_id: int, total_rows: int) -> None:
        with self._gateway.transaction():
            self._gateway.set_total_rows(job_id, total_rows)

    def record_chunk(self, job_id: int, rows: int, errors: int, last_line: int) -> bool:
        """Advance counters and checkpoint. Caller owns the transaction.

        Returns False when the checkpoint already sits at `last_line`: an
        earlier attempt at this chunk committed but its acknowledgement was
        lost, so the replay only repeats idempotent upserts and the counters
        are left alone.
        """
        if self._gateway.advance_job_progress(job_id, rows, errors, last_line):
            return True
        job = self._gateway.get_job(job_id)
        if (
            job is not None
            and job.status is JobStatus.PROCESSING
            and job.last_processed_line == last_line
        ):
            log.warning(
                "job %s: checkpoint already at line %s, chunk was committed before",
                job_id, last_line,
            )
            return False
        raise CheckpointRegression(
            f"job {job_id} rejected checkpoint {last_line}: job is not "
            "PROCESSING or its checkpoint is already beyond that line"
        )
