"""Tests for JobProcessor: stage orchestration, failure policy, progress."""

from __future__ import annotations

import threading
import time

import pytest

from knowio.db.models import BatchStoreResult, Failed, Stored
from knowio.errors import (
    ChunkingError,
    EmbeddingError,
    FetchError,
    JobNotFoundError,
    JobStateError,
    StorageError,
)
from knowio.ingest.chunker import Chunker
from knowio.ingest.fetcher import FetchedPage
from knowio.jobs.models import IngestionOptions, JobStatus
from knowio.retry import RetryPolicy
from knowio.telemetry import RecordingTelemetry

ROOT = "https://docs.example.com/guide"
PAGE_A = "https://docs.example.com/guide/a"
PAGE_B = "https://docs.example.com/guide/b"
PAGE_C = "https://docs.example.com/guide/c"

THREE_SECTIONS = "# Alpha\nAlpha text.\n\n# Beta\nBeta text.\n\n# Gamma\nGamma text."


def _page(url: str, links: list[str] | None = None, content: str | None = None) -> FetchedPage:
    return FetchedPage(
        url=url,
        title="Guide",
        content=content if content is not None else f"Content for {url}. Short and sweet.",
        links=links or [],
    )


def _queue(job_repo, url: str = ROOT, **options) -> str:
    return job_repo.create(url, IngestionOptions(**options)).id


class PartialStore:
    """Fails the first chunk of every batch."""

    def store_batch(self, chunks):
        return BatchStoreResult.from_outcomes(
            [Failed(c.id, "disk full") if i == 0 else Stored(c.id) for i, c in enumerate(chunks)]
        )


class UnavailableStore:
    def store_batch(self, chunks):
        raise StorageError("Database unavailable: database is locked")


# ------------------------------------------------------------------
# Happy path
# ------------------------------------------------------------------


def test_single_page_completes(make_processor, job_repo, store):
    job_id = _queue(job_repo)
    result = make_processor().process_job(job_id)

    assert result.success is True
    assert result.total_chunks == 1
    assert result.errors == []
    assert result.processing_time_ms > 0

    job = job_repo.get(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.started_at is not None
    assert job.completed_at is not None
    assert job.error_message is None
    p = job.progress
    assert (p.pages_discovered, p.pages_processed) == (1, 1)
    assert p.chunks_created == p.chunks_embedded == 1
    assert p.errors == []
    assert p.completion_rate == 100.0
    assert store.get_chunks_by_source(ROOT).total == 1


def test_reingesting_updates_instead_of_duplicating(make_processor, job_repo, store):
    processor = make_processor()
    processor.process_job(_queue(job_repo))
    processor.process_job(_queue(job_repo))

    assert store.get_stats().total_chunks == 1


def test_telemetry_records_job(make_processor, job_repo):
    telemetry = RecordingTelemetry()
    job_id = _queue(job_repo)
    make_processor(telemetry=telemetry).process_job(job_id)

    [record] = telemetry.records
    assert record["operation"] == "process_job"
    assert record["job_id"] == job_id
    assert record["status"] == "completed"


# ------------------------------------------------------------------
# Preconditions
# ------------------------------------------------------------------


def test_unknown_job_raises(make_processor):
    with pytest.raises(JobNotFoundError):
        make_processor().process_job("missing")


def test_job_not_queued_raises(make_processor, job_repo):
    job_id = _queue(job_repo)
    job_repo.mark_running(job_id)
    with pytest.raises(JobStateError):
        make_processor().process_job(job_id)


def test_completed_job_is_not_reprocessed(make_processor, job_repo):
    job_id = _queue(job_repo)
    processor = make_processor()
    processor.process_job(job_id)
    with pytest.raises(JobStateError):
        processor.process_job(job_id)


# ------------------------------------------------------------------
# Validation and fetch failures
# ------------------------------------------------------------------


def test_validation_failure_fails_job_without_fetching(
    make_processor, job_repo, fake_validator, fake_fetcher
):
    fake_validator.rejected.add(ROOT)
    job_id = _queue(job_repo)
    result = make_processor().process_job(job_id)

    assert result.success is False
    job = job_repo.get(job_id)
    assert job.status is JobStatus.FAILED
    assert job.error_message.startswith("URL validation failed")
    assert "robots.txt" in job.error_message
    assert fake_fetcher.calls == []


def test_transient_fetch_failure_is_retried(make_processor, job_repo, fake_fetcher):
    fake_fetcher.failures[ROOT] = [FetchError("HTTP 503 fetching page", retryable=True)]
    job_id = _queue(job_repo)
    result = make_processor().process_job(job_id)

    assert result.success is True
    assert job_repo.get(job_id).status is JobStatus.COMPLETED
    assert fake_fetcher.calls == [ROOT, ROOT]


def test_permanent_fetch_failure_is_not_retried(make_processor, job_repo, fake_fetcher):
    fake_fetcher.failures[ROOT] = [FetchError("HTTP 404 fetching page")]
    job_id = _queue(job_repo)
    make_processor().process_job(job_id)

    job = job_repo.get(job_id)
    assert job.status is JobStatus.FAILED
    assert job.error_message == "Content fetch failed: HTTP 404 fetching page"
    assert fake_fetcher.calls == [ROOT]


def test_retries_exhausted_fails_job(make_processor, job_repo, fake_fetcher):
    fake_fetcher.failures[ROOT] = [FetchError("timed out", retryable=True) for _ in range(5)]
    job_id = _queue(job_repo)
    make_processor(
        retry_policy=RetryPolicy(max_retries=2, base_delay=0, max_delay=0)
    ).process_job(job_id)

    assert job_repo.get(job_id).status is JobStatus.FAILED
    assert len(fake_fetcher.calls) == 3


def test_unexpected_error_fails_job(make_processor, job_repo, fake_fetcher):
    fake_fetcher.failures[ROOT] = [RuntimeError("parser exploded")]
    job_id = _queue(job_repo)
    result = make_processor().process_job(job_id)

    assert result.success is False
    job = job_repo.get(job_id)
    assert job.status is JobStatus.FAILED
    assert job.error_message == "Job processing failed: parser exploded"
    assert job.progress.errors == ["Job processing failed: parser exploded"]


# ------------------------------------------------------------------
# Chunk / embed / store failures
# ------------------------------------------------------------------


def test_chunking_failure_drops_page(make_processor, job_repo, fake_fetcher, fake_embedder):
    fake_fetcher.pages[ROOT] = _page(ROOT, content="   ")
    job_id = _queue(job_repo)
    make_processor().process_job(job_id)

    job = job_repo.get(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.progress.pages_processed == 0
    assert fake_embedder.calls == 0


def test_embedding_failure_fails_job(make_processor, job_repo, fake_embedder, store):
    fake_embedder.error = EmbeddingError("Invalid embedding dimensions: expected 4, got 3")
    job_id = _queue(job_repo)
    make_processor().process_job(job_id)

    job = job_repo.get(job_id)
    assert job.status is JobStatus.FAILED
    assert job.error_message.startswith("Embedding generation failed: Invalid embedding")
    assert job.progress.chunks_created == 1
    assert job.progress.chunks_embedded == 0
    assert store.get_stats().total_chunks == 0


def test_partial_store_failure_still_completes(make_processor, job_repo, fake_fetcher):
    fake_fetcher.pages[ROOT] = _page(ROOT, content=THREE_SECTIONS)
    job_id = _queue(job_repo)
    result = make_processor(store=PartialStore()).process_job(job_id)

    job = job_repo.get(job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.progress.chunks_created == 3
    assert job.progress.chunks_embedded == 2
    assert job.progress.errors == []
    assert result.total_chunks == 2


def test_store_unavailable_fails_job(make_processor, job_repo):
    job_id = _queue(job_repo)
    make_processor(store=UnavailableStore()).process_job(job_id)

    job = job_repo.get(job_id)
    assert job.status is JobStatus.FAILED
    assert job.error_message == "Vector storage failed: Database unavailable: database is locked"


# ------------------------------------------------------------------
# Crawling
# ------------------------------------------------------------------


def test_links_not_followed_by_default(make_processor, job_repo, fake_fetcher):
    fake_fetcher.pages[ROOT] = _page(ROOT, links=[PAGE_A, PAGE_B])
    job_id = _queue(job_repo)
    make_processor().process_job(job_id)

    assert fake_fetcher.calls == [ROOT]
    assert job_repo.get(job_id).progress.pages_discovered == 1


def test_follow_links(make_processor, job_repo, fake_fetcher, store):
    fake_fetcher.pages[ROOT] = _page(ROOT, links=[PAGE_A, PAGE_B])
    job_id = _queue(job_repo, follow_links=True, max_depth=2)
    make_processor().process_job(job_id)

    job = job_repo.get(job_id)
    assert job.status is JobStatus.COMPLETED
    assert (job.progress.pages_discovered, job.progress.pages_processed) == (3, 3)
    assert sorted(fake_fetcher.calls) == sorted([ROOT, PAGE_A, PAGE_B])
    assert {s.source_url for s in store.list_sources()} == {ROOT, PAGE_A, PAGE_B}


def test_max_depth_limits_crawl(make_processor, job_repo, fake_fetcher):
    fake_fetcher.pages[ROOT] = _page(ROOT, links=[PAGE_A])
    fake_fetcher.pages[PAGE_A] = _page(PAGE_A, links=[PAGE_B])
    job_id = _queue(job_repo, follow_links=True, max_depth=2)
    make_processor().process_job(job_id)

    assert PAGE_B not in fake_fetcher.calls
    assert job_repo.get(job_id).progress.pages_processed == 2


def test_links_are_deduplicated(make_processor, job_repo, fake_fetcher):
    fake_fetcher.pages[ROOT] = _page(ROOT, links=[PAGE_A, PAGE_B])
    fake_fetcher.pages[PAGE_A] = _page(PAGE_A, links=[ROOT, PAGE_B, PAGE_C])
    fake_fetcher.pages[PAGE_B] = _page(PAGE_B, links=[PAGE_A, PAGE_C])
    job_id = _queue(job_repo, follow_links=True, max_depth=3)
    make_processor().process_job(job_id)

    assert sorted(fake_fetcher.calls) == sorted([ROOT, PAGE_A, PAGE_B, PAGE_C])
    assert job_repo.get(job_id).progress.pages_discovered == 4


def test_max_pages_caps_discovery(make_processor, job_repo, fake_fetcher):
    fake_fetcher.pages[ROOT] = _page(ROOT, links=[PAGE_A, PAGE_B, PAGE_C])
    job_id = _queue(job_repo, follow_links=True, max_depth=2)
    make_processor(max_pages=2).process_job(job_id)

    assert len(fake_fetcher.calls) == 2
    assert job_repo.get(job_id).progress.pages_discovered == 2


class PeakFetcher:
    """Records the most fetches in flight at once; earlier links answer slower."""

    def __init__(self, root: FetchedPage, delays: dict[str, float]) -> None:
        self.root = root
        self.delays = delays
        self.in_flight = 0
        self.peak = 0
        self._lock = threading.Lock()

    def fetch(self, url: str) -> FetchedPage:
        if url == self.root.url:
            return self.root
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(self.delays[url])
        finally:
            with self._lock:
                self.in_flight -= 1
        return _page(url)


class OrderRecordingChunker(Chunker):
    def __init__(self) -> None:
        super().__init__(max_tokens=50, overlap_tokens=10)
        self.sources: list[str] = []

    def chunk(self, content, page):
        self.sources.append(page.source_url)
        return super().chunk(content, page)


def test_sibling_fetches_bounded_by_fan_out(make_processor, job_repo):
    children = [f"{ROOT}/{i}" for i in range(5)]
    fetcher = PeakFetcher(
        _page(ROOT, links=children),
        delays={url: 0.25 - 0.04 * i for i, url in enumerate(children)},
    )
    chunker = OrderRecordingChunker()
    job_id = _queue(job_repo, follow_links=True, max_depth=2)

    make_processor(fetcher=fetcher, chunker=chunker, fan_out=2).process_job(job_id)

    assert 1 < fetcher.peak <= 2
    assert chunker.sources == [ROOT, *children]
    assert job_repo.get(job_id).progress.pages_processed == 6


def test_child_fetch_failure_drops_page(make_processor, job_repo, fake_fetcher):
    fake_fetcher.pages[ROOT] = _page(ROOT, links=[PAGE_A, PAGE_B])
    fake_fetcher.failures[PAGE_B] = [FetchError("HTTP 404 fetching page")]
    job_id = _queue(job_repo, follow_links=True, max_depth=2)
    make_processor().process_job(job_id)

    job = job_repo.get(job_id)
    assert job.status is JobStatus.COMPLETED
    assert (job.progress.pages_discovered, job.progress.pages_processed) == (3, 2)
    assert job.progress.errors == []


def test_rejected_child_is_not_counted(make_processor, job_repo, fake_fetcher, fake_validator):
    fake_fetcher.pages[ROOT] = _page(ROOT, links=[PAGE_A, PAGE_B])
    fake_validator.rejected.add(PAGE_B)
    job_id = _queue(job_repo, follow_links=True, max_depth=2)
    make_processor().process_job(job_id)

    job = job_repo.get(job_id)
    assert job.status is JobStatus.COMPLETED
    assert (job.progress.pages_discovered, job.progress.pages_processed) == (2, 2)
    assert PAGE_B not in fake_fetcher.calls


# ------------------------------------------------------------------
# Cancellation
# ------------------------------------------------------------------


def test_cancelled_job_fails_with_timeout(make_processor, job_repo, fake_fetcher):
    cancel = threading.Event()
    cancel.set()
    job_id = _queue(job_repo)
    result = make_processor().process_job(job_id, cancel)

    assert result.success is False
    job = job_repo.get(job_id)
    assert job.status is JobStatus.FAILED
    assert job.error_message == "Job timed out"
    assert fake_fetcher.calls == []


def test_watchdog_message_is_kept(make_processor, job_repo, fake_fetcher):
    job_id = _queue(job_repo)
    cancel = threading.Event()

    class WatchdogFetcher:
        def fetch(self, url):
            # The queue's watchdog fails the job while the fetch is in flight.
            job_repo.mark_failed(job_id, "Job timed out after 1s")
            cancel.set()
            return _page(url)

    result = make_processor(fetcher=WatchdogFetcher()).process_job(job_id, cancel)

    assert result.success is False
    assert result.errors == ["Job timed out after 1s"]
    assert job_repo.get(job_id).error_message == "Job timed out after 1s"
