"""Job queue — durable submission plus a bounded worker pool.

Jobs are admitted in submission order by a ``ThreadPoolExecutor`` with
``max_concurrent_jobs`` workers. Each running job gets a watchdog timer; when
it fires the job is marked FAILED and its cancel event is set so the worker
abandons the job at its next stage boundary.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError

from knowio.errors import JobNotFoundError, JobStateError, UsageError
from knowio.jobs.models import (
    IngestionJob,
    IngestionOptions,
    IngestionRequest,
    JobResult,
    JobStatus,
    QueueStats,
)
from knowio.jobs.processor import JobProcessor
from knowio.jobs.repository import JobRepository

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_JOBS = 5
DEFAULT_JOB_TIMEOUT = 300.0
INTERRUPTED_MESSAGE = "Job interrupted by worker shutdown"


class JobQueue:
    """Accept ingestion jobs and run them on a fixed-size worker pool.

    Args:
        jobs: Durable job records.
        processor: Runs a single job end to end.
        max_concurrent_jobs: Worker pool size.
        job_timeout: Seconds a job may run before it is force-failed.
    """

    def __init__(
        self,
        jobs: JobRepository,
        processor: JobProcessor,
        *,
        max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS,
        job_timeout: float = DEFAULT_JOB_TIMEOUT,
    ) -> None:
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be >= 1")
        self._jobs = jobs
        self._processor = processor
        self.max_concurrent_jobs = max_concurrent_jobs
        self.job_timeout = job_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_jobs, thread_name_prefix="knowio-job"
        )
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self, url: Any, options: IngestionOptions | Mapping[str, Any] | None = None
    ) -> str:
        """Record a QUEUED job for *url* and schedule it. Returns the job id.

        Raises:
            UsageError: If the url or options are malformed; no job is created.
        """
        if options is None:
            options = {}
        elif isinstance(options, IngestionOptions):
            options = options.model_dump()
        try:
            request = IngestionRequest.model_validate({"url": url, "options": options})
        except ValidationError as exc:
            raise UsageError(_format_validation_error(exc)) from exc

        job = self._jobs.create(request.url, request.options)
        logger.info("Job %s queued for %s", job.id, job.url, extra={"job_id": job.id})
        self._schedule(job.id)
        return job.id

    def _schedule(self, job_id: str) -> None:
        with self._lock:
            future = self._executor.submit(self._run, job_id)
            self._futures[job_id] = future
        # Outside the lock: the callback runs immediately if the job already finished.
        future.add_done_callback(lambda _f: self._forget(job_id))

    def _forget(self, job_id: str) -> None:
        with self._lock:
            self._futures.pop(job_id, None)

    def _run(self, job_id: str) -> JobResult | None:
        cancel = threading.Event()
        timer = threading.Timer(self.job_timeout, self._on_timeout, args=(job_id, cancel))
        timer.daemon = True
        timer.start()
        try:
            return self._processor.process_job(job_id, cancel)
        except (JobNotFoundError, JobStateError) as exc:
            logger.warning("Skipping job %s: %s", job_id, exc)
            return None
        finally:
            timer.cancel()

    def _on_timeout(self, job_id: str, cancel: threading.Event) -> None:
        cancel.set()
        message = f"Job timed out after {self.job_timeout:g}s"
        try:
            failed = self._jobs.mark_failed(job_id, message)
        finally:
            # Each timer runs on its own one-shot thread.
            self._jobs.release_connection()
        if failed:
            logger.error("Job %s: %s", job_id, message, extra={"job_id": job_id})

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self, job_id: str) -> IngestionJob:
        """Return the current job record.

        Raises:
            JobNotFoundError: If the id is unknown.
        """
        return self._jobs.get(job_id)

    def list_jobs(
        self, status: JobStatus | None = None, limit: int = 50, offset: int = 0
    ) -> tuple[list[IngestionJob], int]:
        return self._jobs.list_jobs(status=status, limit=limit, offset=offset)

    def get_queue_stats(self) -> QueueStats:
        return self._jobs.stats()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def retry_job(self, job_id: str) -> str:
        """Queue a fresh job with the url and options of FAILED job *job_id*."""
        job = self._jobs.get(job_id)
        if job.status is not JobStatus.FAILED:
            raise JobStateError(
                f"Only failed jobs can be retried; job {job_id} is {job.status.value}"
            )
        return self.submit(job.url, job.options)

    def cleanup_old_jobs(self, older_than_days: int = 30) -> int:
        """Delete COMPLETED and FAILED jobs that finished more than *older_than_days* ago."""
        if older_than_days < 0:
            raise ValueError("older_than_days must be >= 0")
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        removed = self._jobs.delete_finished_before(cutoff.isoformat(timespec="microseconds"))
        logger.info("Purged %d jobs older than %d days", removed, older_than_days)
        return removed

    def recover(self) -> list[str]:
        """Resume after a restart.

        RUNNING jobs from a dead process are failed; QUEUED jobs are scheduled
        again in creation order. Returns the rescheduled ids.
        """
        for job_id in self._jobs.ids_with_status(JobStatus.RUNNING):
            with self._lock:
                if job_id in self._futures:
                    continue
            if self._jobs.mark_failed(job_id, INTERRUPTED_MESSAGE):
                logger.warning("Job %s: %s", job_id, INTERRUPTED_MESSAGE)

        rescheduled: list[str] = []
        for job_id in self._jobs.ids_with_status(JobStatus.QUEUED):
            with self._lock:
                if job_id in self._futures:
                    continue
            self._schedule(job_id)
            rescheduled.append(job_id)
        return rescheduled

    def wait(self, job_ids: list[str] | None = None, timeout: float | None = None) -> bool:
        """Block until the given (default: all scheduled) jobs finish.

        Ids with no pending future have already finished. Returns True if
        every job finished within *timeout*.
        """
        with self._lock:
            if job_ids is None:
                futures = list(self._futures.values())
            else:
                futures = [self._futures[j] for j in job_ids if j in self._futures]
        _, pending = wait_futures(futures, timeout=timeout)
        return not pending

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; optionally wait for running jobs."""
        self._executor.shutdown(wait=wait, cancel_futures=not wait)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(p) for p in error["loc"]) or "payload"
        parts.append(f"{loc}: {error['msg']}")
    return "Invalid ingestion request: " + "; ".join(parts)
