"""Unit tests for score_etl.ledger against the in-memory gateway."""

from __future__ import annotations

from pathlib import Path

import pytest

from score_etl.ledger import (
    ImportJob,
    JobLedger,
    JobStatus,
    check_transition,
)
from score_etl.shared import (
    CheckpointRegression,
    FingerprintMismatch,
    ImportAlreadyInProgress,
    InvalidJobTransition,
    JobNotFound,
    JobNotResumable,
)
from fakes import InMemoryGateway

CSV = Path("diem_thi.csv")
HASH = "a" * 64
OTHER_HASH = "b" * 64


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def ledger(gateway) -> JobLedger:
    return JobLedger(gateway)


def _checkpoint(gateway: InMemoryGateway, ledger: JobLedger, job_id: int, rows: int, errors: int, line: int) -> None:
    with gateway.transaction():
        ledger.record_chunk(job_id, rows, errors, line)


# ---------------------------------------------------------------------------
# JobStatus / transitions table
# ---------------------------------------------------------------------------

class TestJobStatus:
    def test_terminal(self):
        assert JobStatus.DONE.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.PENDING.is_terminal
        assert not JobStatus.PROCESSING.is_terminal

    @pytest.mark.parametrize(
        "current,target",
        [
            (JobStatus.PENDING, JobStatus.PROCESSING),
            (JobStatus.PENDING, JobStatus.FAILED),
            (JobStatus.PROCESSING, JobStatus.DONE),
            (JobStatus.PROCESSING, JobStatus.FAILED),
        ],
    )
    def test_allowed(self, current, target):
        check_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (JobStatus.DONE, JobStatus.PROCESSING),
            (JobStatus.DONE, JobStatus.FAILED),
            (JobStatus.FAILED, JobStatus.DONE),
            (JobStatus.FAILED, JobStatus.PROCESSING),
            (JobStatus.PENDING, JobStatus.DONE),
            (JobStatus.PROCESSING, JobStatus.PENDING),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(InvalidJobTransition):
            check_transition(current, target)


# ---------------------------------------------------------------------------
# Creation and duplicate guard
# ---------------------------------------------------------------------------

class TestCreate:
    def test_start_creates_processing_job(self, ledger):
        job = ledger.start(CSV, HASH)
        assert job.status is JobStatus.PROCESSING
        assert job.file_path == "diem_thi.csv"
        assert job.file_hash == HASH
        assert job.processed_rows == 0
        assert job.error_rows == 0
        assert job.last_processed_line == 0
        assert job.total_rows is None
        assert job.started_at is not None
        assert job.finished_at is None

    def test_enqueue_creates_pending_job(self, ledger):
        job = ledger.enqueue(CSV, HASH)
        assert job.status is JobStatus.PENDING
        assert job.started_at is None

    def test_duplicate_while_processing_rejected(self, ledger, gateway):
        first = ledger.start(CSV, HASH)
        with pytest.raises(ImportAlreadyInProgress) as exc_info:
            ledger.start(CSV, HASH)
        assert exc_info.value.job_id == first.id
        assert len(gateway.jobs) == 1

    def test_duplicate_while_pending_rejected(self, ledger, gateway):
        ledger.enqueue(CSV, HASH)
        with pytest.raises(ImportAlreadyInProgress):
            ledger.start(Path("renamed.csv"), HASH)
        assert len(gateway.jobs) == 1

    def test_different_file_allowed(self, ledger):
        a = ledger.start(CSV, HASH)
        b = ledger.start(CSV, OTHER_HASH)
        assert a.id != b.id

    def test_new_job_allowed_after_done(self, ledger):
        first = ledger.start(CSV, HASH)
        ledger.mark_done(first.id)
        second = ledger.start(CSV, HASH)
        assert second.id != first.id
        assert second.status is JobStatus.PROCESSING

    def test_new_job_allowed_after_failed(self, ledger):
        first = ledger.start(CSV, HASH)
        ledger.mark_failed(first.id)
        assert ledger.start(CSV, HASH).id != first.id


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

class TestTransitions:
    def test_claim_pending(self, ledger):
        job = ledger.enqueue(CSV, HASH)
        claimed = ledger.claim(job.id)
        assert claimed.status is JobStatus.PROCESSING
        assert claimed.started_at is not None

    def test_mark_done_sets_finished_at(self, ledger):
        job = ledger.start(CSV, HASH)
        done = ledger.mark_done(job.id)
        assert done.status is JobStatus.DONE
        assert done.finished_at is not None
        assert done.started_at == job.started_at

    def test_mark_failed_from_pending(self, ledger):
        job = ledger.enqueue(CSV, HASH)
        assert ledger.mark_failed(job.id).status is JobStatus.FAILED

    def test_done_is_immutable(self, ledger):
        job = ledger.start(CSV, HASH)
        ledger.mark_done(job.id)
        with pytest.raises(InvalidJobTransition):
            ledger.mark_failed(job.id)
        with pytest.raises(InvalidJobTransition):
            ledger.claim(job.id)
        assert ledger.get(job.id).status is JobStatus.DONE

    def test_failed_cannot_be_marked_done(self, ledger):
        job = ledger.start(CSV, HASH)
        ledger.mark_failed(job.id)
        with pytest.raises(InvalidJobTransition):
            ledger.mark_done(job.id)

    def test_pending_cannot_jump_to_done(self, ledger):
        job = ledger.enqueue(CSV, HASH)
        with pytest.raises(InvalidJobTransition):
            ledger.mark_done(job.id)

    def test_concurrent_change_detected(self, ledger, gateway):
        job = ledger.start(CSV, HASH)
        stale = ledger.get(job.id)
        ledger.mark_done(job.id)
        with pytest.raises(InvalidJobTransition, match="changed to DONE"):
            ledger._apply(stale, JobStatus.FAILED)

    def test_unknown_job(self, ledger):
        with pytest.raises(JobNotFound):
            ledger.mark_done(999)

    def test_get_unknown_job(self, ledger):
        with pytest.raises(JobNotFound):
            ledger.get(999)


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

class TestRecordChunk:
    def test_advances_counters_and_checkpoint(self, ledger, gateway):
        job = ledger.start(CSV, HASH)
        _checkpoint(gateway, ledger, job.id, 1000, 3, 1000)
        _checkpoint(gateway, ledger, job.id, 500, 1, 1500)
        job = ledger.get(job.id)
        assert job.processed_rows == 1500
        assert job.error_rows == 4
        assert job.last_processed_line == 1500

    def test_regression_rejected(self, ledger, gateway):
        job = ledger.start(CSV, HASH)
        _checkpoint(gateway, ledger, job.id, 10, 0, 10)
        with pytest.raises(CheckpointRegression):
            _checkpoint(gateway, ledger, job.id, 5, 0, 5)
        assert ledger.get(job.id).processed_rows == 10

    def test_replayed_checkpoint_is_a_no_op(self, ledger, gateway):
        job = ledger.start(CSV, HASH)
        with gateway.transaction():
            assert ledger.record_chunk(job.id, 10, 2, 10) is True
        with gateway.transaction():
            assert ledger.record_chunk(job.id, 10, 2, 10) is False
        job = ledger.get(job.id)
        assert (job.processed_rows, job.error_rows, job.last_processed_line) == (10, 2, 10)

    def test_not_processing_rejected(self, ledger, gateway):
        job = ledger.start(CSV, HASH)
        ledger.mark_done(job.id)
        with pytest.raises(CheckpointRegression):
            _checkpoint(gateway, ledger, job.id, 1, 0, 1)

    def test_rolled_back_with_enclosing_transaction(self, ledger, gateway):
        job = ledger.start(CSV, HASH)
        with pytest.raises(RuntimeError):
            with gateway.transaction():
                ledger.record_chunk(job.id, 5, 1, 5)
                raise RuntimeError("data write failed")
        job = ledger.get(job.id)
        assert (job.processed_rows, job.error_rows, job.last_processed_line) == (0, 0, 0)

    def test_set_total_rows(self, ledger):
        job = ledger.start(CSV, HASH)
        ledger.set_total_rows(job.id, 1234)
        assert ledger.get(job.id).total_rows == 1234


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------

class TestResume:
    def test_processing_job_returned_as_is(self, ledger, gateway):
        job = ledger.start(CSV, HASH)
        _checkpoint(gateway, ledger, job.id, 100, 0, 100)
        resumed = ledger.resume(job.id, HASH)
        assert resumed.status is JobStatus.PROCESSING
        assert resumed.last_processed_line == 100

    def test_pending_job_is_claimed(self, ledger):
        job = ledger.enqueue(CSV, HASH)
        assert ledger.resume(job.id, HASH).status is JobStatus.PROCESSING

    def test_failed_job_is_reopened_with_checkpoint(self, ledger, gateway):
        job = ledger.start(CSV, HASH)
        _checkpoint(gateway, ledger, job.id, 200, 2, 200)
        ledger.mark_failed(job.id)
        reopened = ledger.resume(job.id, HASH)
        assert reopened.id == job.id
        assert reopened.status is JobStatus.PROCESSING
        assert reopened.finished_at is None
        assert reopened.processed_rows == 200
        assert reopened.last_processed_line == 200

    def test_failed_job_not_reopened_while_other_job_live(self, ledger):
        job = ledger.start(CSV, HASH)
        ledger.mark_failed(job.id)
        other = ledger.start(CSV, HASH)
        with pytest.raises(ImportAlreadyInProgress) as exc_info:
            ledger.resume(job.id, HASH)
        assert exc_info.value.job_id == other.id
        assert ledger.get(job.id).status is JobStatus.FAILED

    def test_done_job_not_resumable(self, ledger):
        job = ledger.start(CSV, HASH)
        ledger.mark_done(job.id)
        with pytest.raises(JobNotResumable):
            ledger.resume(job.id, HASH)

    def test_fingerprint_mismatch(self, ledger):
        job = ledger.start(CSV, HASH)
        with pytest.raises(FingerprintMismatch):
            ledger.resume(job.id, OTHER_HASH)

    def test_unknown_job(self, ledger):
        with pytest.raises(JobNotFound):
            ledger.resume(404, HASH)


# ---------------------------------------------------------------------------
# ImportJob
# ---------------------------------------------------------------------------

class TestImportJob:
    def test_to_dict(self):
        job = ImportJob(
            id=1, file_path="f.csv", file_hash=HASH, status=JobStatus.DONE,
            total_rows=3, processed_rows=3, error_rows=1, last_processed_line=3,
            started_at=None, finished_at=None,
        )
        d = job.to_dict()
        assert d["status"] == "DONE"
        assert d["processed_rows"] == 3
        assert set(d) == {
            "id", "file_path", "file_hash", "status", "total_rows", "processed_rows",
            "error_rows", "last_processed_line", "started_at", "finished_at",
        }
