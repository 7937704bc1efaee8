"""Durable job records in the ``ingestion_jobs`` table.

Every state change is a conditional UPDATE keyed on the expected current
status, so transitions only move forward and each timestamp is written once.
A transition that loses (the job was already moved) returns False.
"""

from __future__ import annotations

import sqlite3
import uuid

from knowio.db.connection import Database
from knowio.db.models import utc_now
from knowio.errors import JobNotFoundError, StorageError
from knowio.jobs.models import (
    IngestionJob,
    IngestionOptions,
    JobProgress,
    JobStatus,
    QueueStats,
)

_COLUMNS = (
    "id, url, status, options, progress, error_message, "
    "created_at, started_at, completed_at"
)


class JobRepository:
    """Data access for ingestion jobs.

    Args:
        db: Database whose thread-local connections are used.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def _conn(self) -> sqlite3.Connection:
        return self._db.connection()

    def release_connection(self) -> None:
        """Close the calling thread's connection; the next call reopens it."""
        self._db.release()

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            return self._conn().execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Job table query failed: {exc}") from exc

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        conn = self._conn()
        try:
            cur = conn.execute(sql, params)
            conn.commit()
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.rollback()
            raise StorageError(f"Job table operation failed: {exc}") from exc
        return cur

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create(self, url: str, options: IngestionOptions) -> IngestionJob:
        """Insert a new QUEUED job and return it."""
        job = IngestionJob(
            id=uuid.uuid4().hex,
            url=url,
            options=options,
            status=JobStatus.QUEUED,
            progress=JobProgress(),
            created_at=utc_now(),
        )
        self._execute(
            """
            INSERT INTO ingestion_jobs (id, url, status, options, progress, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                job.id,
                job.url,
                job.status.value,
                job.options.model_dump_json(),
                job.progress.model_dump_json(),
                job.created_at,
            ),
        )
        return job

    def get(self, job_id: str) -> IngestionJob:
        """Return the job with *job_id*.

        Raises:
            JobNotFoundError: If no such job exists.
        """
        rows = self._query(
            f"SELECT {_COLUMNS} FROM ingestion_jobs WHERE id = ?", (job_id,)
        )
        if not rows:
            raise JobNotFoundError(job_id)
        return _row_to_job(rows[0])

    def list_jobs(
        self, status: JobStatus | None = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[IngestionJob], int]:
        """Return (jobs newest first, total matching)."""
        where, params = ("WHERE status = ?", (status.value,)) if status else ("", ())
        total = self._query(
            f"SELECT COUNT(*) FROM ingestion_jobs {where}", params
        )[0][0]
        rows = self._query(
            f"""
            SELECT {_COLUMNS} FROM ingestion_jobs {where}
            ORDER BY created_at DESC, rowid DESC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )
        return [_row_to_job(r) for r in rows], total

    def ids_with_status(self, status: JobStatus) -> list[str]:
        """Job ids in *status*, oldest first."""
        rows = self._query(
            "SELECT id FROM ingestion_jobs WHERE status = ? ORDER BY created_at, rowid",
            (status.value,),
        )
        return [r["id"] for r in rows]

    def stats(self) -> QueueStats:
        rows = self._query(
            "SELECT status, COUNT(*) AS n FROM ingestion_jobs GROUP BY status"
        )
        counts = {r["status"]: r["n"] for r in rows}
        return QueueStats(
            queued=counts.get(JobStatus.QUEUED.value, 0),
            running=counts.get(JobStatus.RUNNING.value, 0),
            completed=counts.get(JobStatus.COMPLETED.value, 0),
            failed=counts.get(JobStatus.FAILED.value, 0),
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mark_running(self, job_id: str) -> bool:
        """QUEUED → RUNNING; sets started_at."""
        cur = self._execute(
            """
            UPDATE ingestion_jobs SET status = ?, started_at = ?
            WHERE id = ? AND status = ?
            """,
            (JobStatus.RUNNING.value, utc_now(), job_id, JobStatus.QUEUED.value),
        )
        return cur.rowcount == 1

    def mark_completed(self, job_id: str, progress: JobProgress) -> bool:
        """RUNNING → COMPLETED; sets completed_at."""
        cur = self._execute(
            """
            UPDATE ingestion_jobs SET status = ?, progress = ?, completed_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                JobStatus.COMPLETED.value,
                progress.model_dump_json(),
                utc_now(),
                job_id,
                JobStatus.RUNNING.value,
            ),
        )
        return cur.rowcount == 1

    def mark_failed(
        self, job_id: str, message: str, progress: JobProgress | None = None
    ) -> bool:
        """RUNNING → FAILED; sets completed_at and error_message."""
        if progress is None:
            cur = self._execute(
                """
                UPDATE ingestion_jobs SET status = ?, error_message = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (JobStatus.FAILED.value, message, utc_now(), job_id, JobStatus.RUNNING.value),
            )
        else:
            cur = self._execute(
                """
                UPDATE ingestion_jobs
                SET status = ?, error_message = ?, progress = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    JobStatus.FAILED.value,
                    message,
                    progress.model_dump_json(),
                    utc_now(),
                    job_id,
                    JobStatus.RUNNING.value,
                ),
            )
        return cur.rowcount == 1

    def update_progress(self, job_id: str, progress: JobProgress) -> bool:
        """Persist *progress* while the job is still RUNNING."""
        cur = self._execute(
            "UPDATE ingestion_jobs SET progress = ? WHERE id = ? AND status = ?",
            (progress.model_dump_json(), job_id, JobStatus.RUNNING.value),
        )
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def delete_finished_before(self, cutoff: str) -> int:
        """Delete COMPLETED/FAILED jobs that finished before *cutoff* (ISO timestamp)."""
        cur = self._execute(
            """
            DELETE FROM ingestion_jobs
            WHERE status IN (?, ?) AND completed_at < ?
            """,
            (JobStatus.COMPLETED.value, JobStatus.FAILED.value, cutoff),
        )
        return cur.rowcount


def _row_to_job(row: sqlite3.Row) -> IngestionJob:
    return IngestionJob(
        id=row["id"],
        url=row["url"],
        status=JobStatus(row["status"]),
        options=IngestionOptions.model_validate_json(row["options"]),
        progress=JobProgress.model_validate_json(row["progress"]),
        error_message=row["error_message"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )
