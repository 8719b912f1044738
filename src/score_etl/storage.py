"""score_etl.storage

Storage gateway: the only place that talks SQL for the import pipeline.

StorageGateway is the interface the ledger and the chunk batcher depend
on. PostgresGateway implements it on psycopg 3 against the schema in
migrations/0001_score_ingest.sql.

All bulk writes are single INSERT ... SELECT FROM unnest(...) statements
with ON CONFLICT DO UPDATE on the natural key, so re-applying the same
records is idempotent. Callers must pass records already deduplicated on
that key (PostgreSQL refuses to update one row twice in a statement).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from decimal import Decimal
from typing import Any, Protocol

import psycopg

from score_etl.ledger import ACTIVE_STATUSES, ImportJob, JobStatus
from score_etl.validation import StudentRecord

log = logging.getLogger(__name__)

# (student_id, subject_id, score)
ScoreRow = tuple[int, int, Decimal]

_JOB_COLUMNS = """
    id, file_path, file_hash, status, total_rows, processed_rows,
    error_rows, last_processed_line, started_at, finished_at
"""


class StorageGateway(Protocol):
    def transaction(self) -> AbstractContextManager[None]: ...

    def is_transient_error(self, exc: BaseException) -> bool: ...

    # Reference data and score tables
    def load_subject_map(self) -> dict[str, int]: ...

    def upsert_students(self, records: Sequence[StudentRecord]) -> int: ...

    def find_student_ids_by_natural_keys(self, keys: Iterable[str]) -> dict[str, int]: ...

    def upsert_scores(self, rows: Sequence[ScoreRow]) -> int: ...

    # Import jobs
    def insert_job(self, file_path: str, file_hash: str, status: JobStatus) -> int | None: ...

    def get_job(self, job_id: int) -> ImportJob | None: ...

    def find_active_job(self, file_hash: str) -> ImportJob | None: ...

    def transition_job(
        self,
        job_id: int,
        from_status: JobStatus,
        to_status: JobStatus,
        mark_started: bool,
    ) -> ImportJob | None: ...

    def set_total_rows(self, job_id: int, total_rows: int) -> None: ...

    def advance_job_progress(
        self, job_id: int, processed_delta: int, error_delta: int, last_line: int,
    ) -> bool: ...


def _job_from_row(row: Sequence[Any]) -> ImportJob:
    return ImportJob(
        id=int(row[0]),
        file_path=row[1],
        file_hash=row[2],
        status=JobStatus(row[3]),
        total_rows=row[4],
        processed_rows=row[5],
        error_rows=row[6],
        last_processed_line=row[7],
        started_at=row[8],
        finished_at=row[9],
    )


class PostgresGateway:
    """psycopg 3 implementation of StorageGateway.

    Holds one connection (autocommit off). A connection that was lost is
    replaced on the next transaction(), which is what lets the chunk
    batcher retry after a dropped connection.
    """

    def __init__(self, dsn: str, connect_timeout: int = 10) -> None:
        self._dsn = dsn
        self._connect_timeout = connect_timeout
        self._conn: psycopg.Connection | None = None

    # ------------------------------------------------------------------ #
    # Connection / transaction                                             #
    # ------------------------------------------------------------------ #

    @property
    def conn(self) -> psycopg.Connection:
        if self._conn is None or self._conn.closed or self._conn.broken:
            if self._conn is not None:
                log.warning("database connection lost; reconnecting")
                self._conn.close()
            self._conn = psycopg.connect(
                self._dsn, autocommit=False, connect_timeout=self._connect_timeout,
            )
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        conn = self.conn
        try:
            yield
            conn.commit()
        except BaseException:
            if not conn.closed:
                try:
                    conn.rollback()
                except psycopg.Error as exc:
                    log.warning("rollback failed: %s", exc)
            raise

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def is_transient_error(self, exc: BaseException) -> bool:
        # OperationalError covers lost connections, admin shutdown and the
        # TransactionRollback family (serialization failure, deadlock).
        # IntegrityError and friends are data problems and never retried.
        return isinstance(exc, psycopg.OperationalError)

    # ------------------------------------------------------------------ #
    # Subjects / students / scores                                         #
    # ------------------------------------------------------------------ #

    def load_subject_map(self) -> dict[str, int]:
        rows = self.conn.execute("SELECT key, id FROM subject").fetchall()
        return {key: int(subject_id) for key, subject_id in rows}

    def upsert_students(self, records: Sequence[StudentRecord]) -> int:
        if not records:
            return 0
        self.conn.execute(
            """
            INSERT INTO student (sbd, ma_ngoai_ngu, group_a_score)
            SELECT * FROM unnest(%s::text[], %s::text[], %s::numeric[])
            ON CONFLICT (sbd) DO UPDATE SET
              ma_ngoai_ngu = EXCLUDED.ma_ngoai_ngu,
              group_a_score = EXCLUDED.group_a_score,
              updated_at = now()
            """,
            (
                [r.sbd for r in records],
                [r.ma_ngoai_ngu for r in records],
                [r.group_a_score for r in records],
            ),
        )
        return len(records)

    def find_student_ids_by_natural_keys(self, keys: Iterable[str]) -> dict[str, int]:
        key_list = list(keys)
        if not key_list:
            return {}
        rows = self.conn.execute(
            "SELECT sbd, id FROM student WHERE sbd = ANY(%s::text[])",
            (key_list,),
        ).fetchall()
        return {sbd: int(student_id) for sbd, student_id in rows}

    def upsert_scores(self, rows: Sequence[ScoreRow]) -> int:
        if not rows:
            return 0
        self.conn.execute(
            """
            INSERT INTO score (student_id, subject_id, score)
            SELECT * FROM unnest(%s::bigint[], %s::bigint[], %s::numeric[])
            ON CONFLICT (student_id, subject_id) DO UPDATE SET
              score = EXCLUDED.score,
              updated_at = now()
            """,
            (
                [r[0] for r in rows],
                [r[1] for r in rows],
                [r[2] for r in rows],
            ),
        )
        return len(rows)

    # ------------------------------------------------------------------ #
    # Import jobs                                                          #
    # ------------------------------------------------------------------ #

    def insert_job(self, file_path: str, file_hash: str, status: JobStatus) -> int | None:
        row = self.conn.execute(
            """
            INSERT INTO import_job (file_path, file_hash, status, started_at)
            VALUES (%s, %s, %s, CASE WHEN %s THEN now() END)
            ON CONFLICT (file_hash) WHERE status IN ('PENDING', 'PROCESSING')
            DO NOTHING
            RETURNING id
            """,
            (file_path, file_hash, status.value, status is JobStatus.PROCESSING),
        ).fetchone()
        return int(row[0]) if row else None

    def get_job(self, job_id: int) -> ImportJob | None:
        row = self.conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM import_job WHERE id = %s",
            (job_id,),
        ).fetchone()
        return _job_from_row(row) if row else None

    def find_active_job(self, file_hash: str) -> ImportJob | None:
        row = self.conn.execute(
            f"""
            SELECT {_JOB_COLUMNS} FROM import_job
            WHERE file_hash = %s AND status = ANY(%s::text[])
            ORDER BY id ASC
            LIMIT 1
            """,
            (file_hash, [s.value for s in ACTIVE_STATUSES]),
        ).fetchone()
        return _job_from_row(row) if row else None

    def transition_job(
        self,
        job_id: int,
        from_status: JobStatus,
        to_status: JobStatus,
        mark_started: bool,
    ) -> ImportJob | None:
        row = self.conn.execute(
            f"""
            UPDATE import_job SET
              status = %s,
              started_at = CASE WHEN %s THEN now() ELSE started_at END,
              finished_at = CASE WHEN %s THEN now() END,
              updated_at = now()
            WHERE id = %s AND status = %s
            RETURNING {_JOB_COLUMNS}
            """,
            (to_status.value, mark_started, to_status.is_terminal, job_id, from_status.value),
        ).fetchone()
        return _job_from_row(row) if row else None

    def set_total_rows(self, job_id: int, total_rows: int) -> None:
        self.conn.execute(
            "UPDATE import_job SET total_rows = %s, updated_at = now() WHERE id = %s",
            (total_rows, job_id),
        )

    def advance_job_progress(
        self, job_id: int, processed_delta: int, error_delta: int, last_line: int,
    ) -> bool:
        cur = self.conn.execute(
            """
            UPDATE import_job SET
              processed_rows = processed_rows + %s,
              error_rows = error_rows + %s,
              last_processed_line = %s,
              updated_at = now()
            WHERE id = %s
              AND status = 'PROCESSING'
              AND last_processed_line < %s
            """,
            (processed_delta, error_delta, last_line, job_id, last_line),
        )
        return cur.rowcount == 1
