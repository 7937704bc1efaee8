"""Job processor — runs one ingestion job through VALIDATE → FETCH → CHUNK → EMBED → STORE.

Failure policy:
- VALIDATE rejects the root URL → job FAILED ("URL validation failed: ...").
- FETCH is retried with the retry policy. The root page failing for good
  fails the job; any other page failing is dropped and the crawl continues.
- CHUNK failing drops that page.
- EMBED failing fails the job ("Embedding generation failed: ...").
- STORE per-chunk failures are counted by the store and never fail the job;
  the store being unusable fails the job ("Vector storage failed: ...").

Sibling pages at one crawl depth are fetched concurrently on a per-job pool.
Chunking, embedding, storing, and every progress update happen on the job's
own worker thread, in discovery order.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from knowio.db.store import VectorStore
from knowio.errors import (
    ChunkingError,
    EmbeddingError,
    FetchError,
    JobStateError,
    JobTimeoutError,
    StorageError,
)
from knowio.ingest.chunker import Chunker, PageMetadata
from knowio.ingest.embedder import Embedder
from knowio.ingest.fetcher import FetchedPage, Fetcher
from knowio.ingest.validator import URLValidator
from knowio.jobs.models import IngestionJob, JobProgress, JobResult, JobStatus
from knowio.jobs.repository import JobRepository
from knowio.retry import RetryPolicy
from knowio.telemetry import NullTelemetry, Telemetry, timed

logger = logging.getLogger(__name__)

DEFAULT_FAN_OUT = 4
DEFAULT_MAX_PAGES = 50


class _JobFailed(Exception):
    """Fatal stage failure; the message becomes the job's error_message."""


@dataclass
class _Run:
    job: IngestionJob
    cancel: threading.Event
    progress: JobProgress = field(default_factory=JobProgress)
    total_chunks: int = 0


@dataclass
class _Fetched:
    url: str
    page: FetchedPage | None = None
    rejected: bool = False


class JobProcessor:
    """Execute queued jobs end to end.

    Args:
        jobs: Durable job records.
        validator, fetcher, chunker, embedder: Pipeline stages.
        store: Destination for embedded chunks.
        retry_policy: Applied around every page fetch.
        fan_out: Concurrent page fetches per crawl depth.
        max_pages: Hard cap on pages a single job may discover.
        telemetry: Receives one ``process_job`` record per job.
    """

    def __init__(
        self,
        jobs: JobRepository,
        *,
        validator: URLValidator,
        fetcher: Fetcher,
        chunker: Chunker,
        embedder: Embedder,
        store: VectorStore,
        retry_policy: RetryPolicy | None = None,
        fan_out: int = DEFAULT_FAN_OUT,
        max_pages: int = DEFAULT_MAX_PAGES,
        telemetry: Telemetry | None = None,
    ) -> None:
        self._jobs = jobs
        self._validator = validator
        self._fetcher = fetcher
        self._chunker = chunker
        self._embedder = embedder
        self._store = store
        self._retry = retry_policy or RetryPolicy()
        self.fan_out = max(1, fan_out)
        self.max_pages = max(1, max_pages)
        self._telemetry = telemetry or NullTelemetry()

    def process_job(self, job_id: str, cancel: threading.Event | None = None) -> JobResult:
        """Run job *job_id* to a terminal state and return its result.

        Args:
            job_id: Id of a QUEUED job.
            cancel: Set by the queue's timeout watchdog; checked between stages.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobStateError: If the job is not QUEUED.
        """
        job = self._jobs.get(job_id)
        if job.status is not JobStatus.QUEUED:
            raise JobStateError(f"Job {job_id} is {job.status.value}, expected queued")
        if not self._jobs.mark_running(job_id):
            raise JobStateError(f"Job {job_id} was started by another worker")

        run = _Run(job=job, cancel=cancel or threading.Event())
        start = time.perf_counter()
        logger.info("Job %s started for %s", job_id, job.url, extra={"job_id": job_id})

        with timed(self._telemetry, "process_job", job_id=job_id) as tags:
            try:
                self._run(run)
            except _JobFailed as exc:
                result = self._finish_failed(run, str(exc))
            except JobTimeoutError:
                result = self._finish_failed(run, "Job timed out")
            except Exception as exc:
                logger.exception("Job %s crashed", job_id)
                result = self._finish_failed(run, f"Job processing failed: {exc}")
            else:
                if self._jobs.mark_completed(job_id, run.progress):
                    result = JobResult(success=True, total_chunks=run.total_chunks)
                else:
                    result = self._finish_failed(run, "Job timed out")
            if result.success:
                logger.info(
                    "Job %s completed: %d pages, %d chunks",
                    job_id,
                    run.progress.pages_processed,
                    run.total_chunks,
                    extra={"job_id": job_id},
                )
            tags.update(status="completed" if result.success else "failed")

        result.processing_time_ms = (time.perf_counter() - start) * 1000
        return result

    def _finish_failed(self, run: _Run, message: str) -> JobResult:
        run.progress.errors.append(message)
        if not self._jobs.mark_failed(run.job.id, message, run.progress):
            # Already failed by the timeout watchdog; keep its message.
            message = self._jobs.get(run.job.id).error_message or message
        logger.error("Job %s failed: %s", run.job.id, message, extra={"job_id": run.job.id})
        return JobResult(success=False, total_chunks=run.total_chunks, errors=[message])

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run(self, run: _Run) -> None:
        options = run.job.options

        validation = self._validator.validate(run.job.url, respect_robots=options.respect_robots)
        if not validation.is_valid:
            raise _JobFailed("URL validation failed: " + "; ".join(validation.errors))
        root = validation.sanitized_url or run.job.url

        seen = {root}
        run.progress.pages_discovered = 1
        self._save(run)

        frontier = [root]
        depth = 1
        while frontier:
            self._check_cancel(run)
            fetched = self._fetch_root(run, root) if depth == 1 else self._fetch_level(run, frontier)

            rejected = sum(1 for f in fetched if f.rejected)
            if rejected:
                run.progress.pages_discovered -= rejected
                self._save(run)

            next_frontier: list[str] = []
            for item in fetched:
                if item.page is None:
                    continue
                self._ingest_page(run, item.page)
                if options.follow_links and depth < options.max_depth:
                    for link in item.page.links:
                        if link in seen or len(seen) >= self.max_pages:
                            continue
                        seen.add(link)
                        next_frontier.append(link)

            if next_frontier:
                run.progress.pages_discovered += len(next_frontier)
                self._save(run)
            frontier = next_frontier
            depth += 1

    def _fetch_root(self, run: _Run, url: str) -> list[_Fetched]:
        try:
            page = self._fetch_with_retry(run, url)
        except FetchError as exc:
            raise _JobFailed(f"Content fetch failed: {exc}") from exc
        return [_Fetched(url=url, page=page)]

    def _fetch_level(self, run: _Run, urls: list[str]) -> list[_Fetched]:
        """Fetch *urls* concurrently; results keep the order of *urls*."""
        workers = min(self.fan_out, len(urls))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="knowio-fetch") as pool:
            futures = [pool.submit(self._fetch_child, run, url) for url in urls]
            return [f.result() for f in futures]

    def _fetch_child(self, run: _Run, url: str) -> _Fetched:
        self._check_cancel(run)
        validation = self._validator.validate(url, respect_robots=run.job.options.respect_robots)
        if not validation.is_valid:
            logger.info("Skipping %s: %s", url, "; ".join(validation.errors))
            return _Fetched(url=url, rejected=True)
        try:
            page = self._fetch_with_retry(run, validation.sanitized_url or url)
        except FetchError as exc:
            logger.warning("Dropping page %s: %s", url, exc, extra={"job_id": run.job.id})
            return _Fetched(url=url)
        return _Fetched(url=url, page=page)

    def _fetch_with_retry(self, run: _Run, url: str) -> FetchedPage:
        def attempt() -> FetchedPage:
            self._check_cancel(run)
            return self._fetcher.fetch(url)

        return self._retry.call(attempt, cancel=run.cancel)

    def _ingest_page(self, run: _Run, page: FetchedPage) -> None:
        """CHUNK → EMBED → STORE for one page."""
        self._check_cancel(run)
        try:
            chunks = self._chunker.chunk(page.content, PageMetadata(source_url=page.url, title=page.title))
        except ChunkingError as exc:
            logger.warning("Dropping page %s: %s", page.url, exc, extra={"job_id": run.job.id})
            return
        run.progress.chunks_created += len(chunks)
        self._save(run)

        self._check_cancel(run)
        try:
            embedded = self._embedder.embed(chunks)
        except EmbeddingError as exc:
            raise _JobFailed(f"Embedding generation failed: {exc}") from exc

        self._check_cancel(run)
        try:
            stored = self._store.store_batch(embedded)
        except StorageError as exc:
            raise _JobFailed(f"Vector storage failed: {exc}") from exc

        if stored.failed:
            logger.warning(
                "Page %s: %d of %d chunks failed to store",
                page.url,
                stored.failed,
                len(embedded),
                extra={"job_id": run.job.id},
            )
        run.progress.chunks_embedded += stored.persisted
        run.progress.pages_processed += 1
        run.total_chunks += stored.persisted
        self._save(run)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _save(self, run: _Run) -> None:
        if not self._jobs.update_progress(run.job.id, run.progress):
            # Job left RUNNING underneath us (timeout watchdog).
            raise JobTimeoutError(f"Job {run.job.id} is no longer running")

    @staticmethod
    def _check_cancel(run: _Run) -> None:
        if run.cancel.is_set():
            raise JobTimeoutError(f"Job {run.job.id} cancelled")
