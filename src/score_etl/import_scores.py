"""score_etl.import_scores

Unified CLI entrypoint for exam-score ingestion and reporting.

Modes (--mode):
  import               -- load a score CSV (default); resumable with --resume-job-id
  status               -- show one import job (--job-id) or the live job for --csv-path
  report_distribution  -- per-subject score-band counts
  report_top           -- top students by group A composite (toan + vat_li + hoa_hoc)
  search               -- one student's scores by registration number (--sbd)

Usage (import):
    python -m score_etl.import_scores \\
        --mode import \\
        --db-dsn "$SCORE_DB_DSN" \\
        --csv-path "rawEvidence/diem_thi_thpt_2024.csv" \\
        --chunk-size 1000

Usage (resume an interrupted or failed job):
    python -m score_etl.import_scores \\
        --mode import \\
        --db-dsn "$SCORE_DB_DSN" \\
        --csv-path "rawEvidence/diem_thi_thpt_2024.csv" \\
        --resume-job-id 42

Processing order per import:
  1.  Fingerprint the file (SHA-256) and create the job, or refuse a duplicate
  2.  Load the subject catalogue once
  3.  Pre-scan the row count (first run of a job only)
  4.  Skip to the job checkpoint, then commit chunk by chunk
  5.  Mark the job DONE; on any error mark it FAILED and exit non-zero
"""

from __future__ import annotations

import json
import logging
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import click

from score_etl.batcher import BatchTotals, ChunkBatcher, ChunkResult, RetryPolicy
from score_etl.ledger import ImportJob, JobLedger
from score_etl.reader import CheckpointedReader, count_data_rows, file_fingerprint
from score_etl.reporting import ReportService
from score_etl.settings import ImportSettings, SettingsValidationError, load_settings
from score_etl.shared import (
    ErrorSink,
    ImportAlreadyInProgress,
    IngestError,
    write_run_report,
)
from score_etl.storage import PostgresGateway, StorageGateway

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImportOutcome:
    job: ImportJob
    totals: BatchTotals
    error_path: Path
    resumed_from: int


def _echo_progress(job_id: int, total_rows: int) -> Callable[[ChunkResult], None]:
    processed = 0

    def on_commit(result: ChunkResult) -> None:
        nonlocal processed
        processed += result.rows
        retry_note = f" after {result.attempts} attempts" if result.attempts > 1 else ""
        click.echo(
            f"[job {job_id}] Committed lines {result.first_line}-{result.last_line}"
            f"{retry_note}: {result.rows} rows, {result.errors} errors "
            f"(this run {processed}, file total {total_rows})"
        )

    return on_commit


def run_import(
    gateway: StorageGateway,
    csv_path: Path,
    settings: ImportSettings,
    resume_job_id: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ImportOutcome:
    """Run (or resume) one import job to a terminal state.

    Fatal errors mark the job FAILED and are re-raised. A KeyboardInterrupt
    or a killed process leaves the job PROCESSING so it can be resumed from
    its last committed chunk.
    """
    fingerprint = file_fingerprint(csv_path)
    ledger = JobLedger(gateway)
    if resume_job_id is None:
        job = ledger.start(csv_path, fingerprint)
        click.echo(f"[job {job.id}] Starting import of {csv_path}")
    else:
        job = ledger.resume(resume_job_id, fingerprint)
        click.echo(
            f"[job {job.id}] Resuming import of {csv_path} "
            f"after line {job.last_processed_line}"
        )

    errors = ErrorSink(settings.errors_dir, job.id)
    try:
        errors.open(job.last_processed_line)

        with gateway.transaction():
            subject_map = gateway.load_subject_map()
        if not subject_map:
            log.warning("subject catalogue is empty; no scores will be stored")

        total_rows = job.total_rows
        if total_rows is None:
            total_rows = count_data_rows(csv_path, settings.delimiter)
            ledger.set_total_rows(job.id, total_rows)
        click.echo(f"[job {job.id}] Total rows to process: {total_rows}")

        with CheckpointedReader(csv_path, delimiter=settings.delimiter) as reader:
            if job.last_processed_line > 0:
                log.info("job %s: skipping to checkpoint line %s", job.id, job.last_processed_line)
                reader.skip_to(job.last_processed_line)
            batcher = ChunkBatcher(
                gateway,
                ledger,
                job.id,
                reader.header,
                subject_map,
                errors,
                chunk_size=settings.chunk_size,
                retry_policy=RetryPolicy(
                    max_attempts=settings.max_attempts,
                    backoff_base_seconds=settings.backoff_base_seconds,
                ),
                chunk_pause_seconds=settings.chunk_pause_seconds,
                sleep=sleep,
                on_commit=_echo_progress(job.id, total_rows),
                delimiter=settings.delimiter,
            )
            totals = batcher.run(reader)

        finished = ledger.mark_done(job.id)
    except Exception as exc:
        log.error("job %s failed: %s", job.id, exc)
        try:
            ledger.mark_failed(job.id)
        except Exception as mark_exc:
            log.error("job %s: could not record FAILED status: %s", job.id, mark_exc)
        raise

    return ImportOutcome(
        job=finished,
        totals=totals,
        error_path=errors.path,
        resumed_from=job.last_processed_line,
    )


# ---------------------------------------------------------------------------
# Report builder
# ---------------------------------------------------------------------------

def build_import_report(outcome: ImportOutcome) -> str:
    job = outcome.job
    totals = outcome.totals
    lines = [
        "=== Score Import Report ===",
        f"job_id              : {job.id}",
        f"status              : {job.status.value}",
        f"file                : {job.file_path}",
        f"resumed_from_line   : {outcome.resumed_from}",
        "",
        "--- Job totals ---",
        f"total_rows          : {job.total_rows}",
        f"processed_rows      : {job.processed_rows}",
        f"error_rows          : {job.error_rows}",
        f"last_processed_line : {job.last_processed_line}",
        "",
        "--- This run ---",
        f"chunks              : {totals.chunks}",
        f"rows                : {totals.rows}",
        f"errors              : {totals.errors}",
        f"students_upserted   : {totals.students_upserted}",
        f"scores_upserted     : {totals.scores_upserted}",
        f"retries             : {totals.retries}",
    ]
    if job.error_rows > 0:
        lines += ["", f"Error log: {outcome.error_path}"]
    return "\n".join(lines)


def _dump(data: object) -> str:
    return json.dumps(data, indent=2, default=str, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="import",
    type=click.Choice(["import", "status", "report_distribution", "report_top", "search"]),
    show_default=True,
    help="Operation to run",
)
@click.option("--db-dsn", required=True, envvar="SCORE_DB_DSN", help="PostgreSQL DSN")
# import flags
@click.option("--csv-path", default=None, type=click.Path(), help="[import|status] Input score CSV")
@click.option("--resume-job-id", default=None, type=int, help="[import] Continue this job from its checkpoint")
@click.option("--settings-path", default=None, type=click.Path(), help="[import] YAML file with import settings")
@click.option("--chunk-size", default=None, type=int, help="[import] Rows per transaction (default 1000)")
@click.option("--max-attempts", default=None, type=int, help="[import] Attempts per chunk on transient DB errors (default 3)")
@click.option("--backoff-base-seconds", default=None, type=float, help="[import] First retry delay; doubles each attempt (default 1.0)")
@click.option("--chunk-pause-ms", default=None, type=float, help="[import] Pause after each committed chunk (default 10)")
@click.option("--delimiter", default=None, help="[import] Field delimiter (default ',')")
@click.option("--errors-dir", default=None, type=click.Path(), help="[import] Directory for per-job rejected-row CSVs")
@click.option(
    "--reports-dir",
    default="./artifacts/reports",
    show_default=True,
    type=click.Path(),
    help="[import] Directory for JSON run reports",
)
# status / reporting flags
@click.option("--job-id", default=None, type=int, help="[status] Import job id")
@click.option("--sbd", default=None, help="[search] Registration number")
@click.option("--limit", default=10, type=int, show_default=True, help="[report_top] Number of students")
@click.option("--verbose", is_flag=True, default=False, help="Debug logging")
def main(
    mode: str,
    db_dsn: str,
    csv_path: str | None,
    resume_job_id: int | None,
    settings_path: str | None,
    chunk_size: int | None,
    max_attempts: int | None,
    backoff_base_seconds: float | None,
    chunk_pause_ms: float | None,
    delimiter: str | None,
    errors_dir: str | None,
    reports_dir: str,
    job_id: int | None,
    sbd: str | None,
    limit: int,
    verbose: bool,
) -> None:
    """Exam-score ingestion and reporting CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if mode == "import":
        if not csv_path:
            click.echo("ERROR: --csv-path is required for --mode import", err=True)
            sys.exit(1)
        try:
            settings = load_settings(Path(settings_path) if settings_path else None).with_overrides(
                chunk_size=chunk_size,
                max_attempts=max_attempts,
                backoff_base_seconds=backoff_base_seconds,
                chunk_pause_seconds=chunk_pause_ms / 1000.0 if chunk_pause_ms is not None else None,
                delimiter=delimiter,
                errors_dir=errors_dir,
            )
        except SettingsValidationError as exc:
            click.echo(f"ERROR: {exc}", err=True)
            sys.exit(1)
        _run_import_mode(db_dsn, Path(csv_path), settings, resume_job_id, Path(reports_dir))
        return

    if mode == "status":
        _run_status_mode(db_dsn, job_id, csv_path)
        return

    # Reporting modes
    gateway = PostgresGateway(db_dsn)
    try:
        reports = ReportService(gateway.conn)
        if mode == "report_distribution":
            click.echo(_dump(reports.distribution()))
        elif mode == "report_top":
            try:
                click.echo(_dump(reports.top_group_a(limit)))
            except ValueError as exc:
                click.echo(f"ERROR: {exc}", err=True)
                sys.exit(1)
        elif mode == "search":
            if not sbd:
                click.echo("ERROR: --sbd is required for --mode search", err=True)
                sys.exit(1)
            student = reports.student(sbd)
            if student is None:
                click.echo(f"No student with sbd {sbd!r}", err=True)
                sys.exit(1)
            click.echo(_dump(student))
    finally:
        gateway.close()


def _run_import_mode(
    db_dsn: str,
    csv_path: Path,
    settings: ImportSettings,
    resume_job_id: int | None,
    reports_dir: Path,
) -> None:
    started_at = datetime.utcnow().isoformat()
    gateway = PostgresGateway(db_dsn)
    try:
        outcome = run_import(gateway, csv_path, settings, resume_job_id=resume_job_id)
    except ImportAlreadyInProgress as exc:
        click.echo(f"FATAL: {exc}", err=True)
        click.echo(
            f"Re-run with --resume-job-id {exc.job_id} if that job was interrupted.",
            err=True,
        )
        sys.exit(1)
    except IngestError as exc:
        click.echo(f"FATAL: {exc}", err=True)
        sys.exit(1)
    except Exception as exc:
        click.echo(f"FATAL: unexpected error during import: {type(exc).__name__}: {exc}", err=True)
        sys.exit(1)
    finally:
        gateway.close()

    click.echo(build_import_report(outcome))
    report_path = write_run_report(
        reports_dir,
        outcome.job.id,
        started_at,
        "import",
        {
            "csv_path": str(csv_path),
            "error_path": str(outcome.error_path),
            "job": outcome.job.to_dict(),
            "run": outcome.totals.to_dict(),
        },
    )
    click.echo(f"[job {outcome.job.id}] Run report: {report_path}")


def _run_status_mode(db_dsn: str, job_id: int | None, csv_path: str | None) -> None:
    if job_id is None and not csv_path:
        click.echo("ERROR: --job-id or --csv-path is required for --mode status", err=True)
        sys.exit(1)
    gateway = PostgresGateway(db_dsn)
    try:
        ledger = JobLedger(gateway)
        if job_id is not None:
            job: ImportJob | None = ledger.get(job_id)
        else:
            job = ledger.find_active(file_fingerprint(Path(csv_path)))
    except IngestError as exc:
        click.echo(f"ERROR: {exc}", err=True)
        sys.exit(1)
    finally:
        gateway.close()

    if job is None:
        click.echo(f"No PENDING or PROCESSING job for {csv_path}")
        return
    click.echo(_dump(job.to_dict()))


if __name__ == "__main__":
    main()
