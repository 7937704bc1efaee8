"""Shared pytest fixtures."""

from __future__ import annotations

import threading
import time

import pytest

from knowio.db.connection import Database
from knowio.db.models import EmbeddedChunk
from knowio.db.schema import initialize
from knowio.db.store import VectorStore
from knowio.errors import EmbeddingError
from knowio.ingest.chunker import Chunker
from knowio.ingest.fetcher import FetchedPage
from knowio.ingest.validator import ValidationResult
from knowio.jobs.processor import JobProcessor
from knowio.jobs.repository import JobRepository
from knowio.retry import RetryPolicy

DIMENSIONS = 4


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def database(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".knowio.db")
    initialize(db.connection(), dimensions=DIMENSIONS)
    yield db
    db.close()


@pytest.fixture
def store(database):
    return VectorStore(database, dimensions=DIMENSIONS, batch_size=2)


@pytest.fixture
def job_repo(database):
    return JobRepository(database)


# ---------------------------------------------------------------------------
# Fake pipeline stages
# ---------------------------------------------------------------------------


class FakeValidator:
    """Accepts every URL except those in ``rejected``."""

    def __init__(self) -> None:
        self.rejected: set[str] = set()
        self.calls: list[str] = []

    def validate(self, url: str, respect_robots: bool = True) -> ValidationResult:
        self.calls.append(url)
        if url in self.rejected:
            return ValidationResult(
                is_valid=False, errors=["Blocked by robots.txt for user agent 'knowio-bot/0.1'"]
            )
        return ValidationResult(is_valid=True, sanitized_url=url)


class FakeFetcher:
    """Serves ``pages`` by URL; ``failures[url]`` exceptions are raised first, in order."""

    def __init__(self) -> None:
        self.pages: dict[str, FetchedPage] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.delay = 0.0
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fetch(self, url: str) -> FetchedPage:
        with self._lock:
            self.calls.append(url)
            pending = self.failures.get(url)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error
        if self.delay:
            time.sleep(self.delay)
        if url in self.pages:
            return self.pages[url]
        return FetchedPage(
            url=url,
            title="Example page",
            content=f"This page lives at {url}. It explains one small thing.",
        )


class FakeEmbedder:
    """Deterministic 4-dimensional vectors; raises ``error`` when set."""

    dimensions = DIMENSIONS

    def __init__(self) -> None:
        self.error: Exception | None = None
        self.calls = 0

    def embed(self, chunks):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [EmbeddedChunk.from_chunk(c, fake_vector(c.content)) for c in chunks]

    def embed_query(self, text: str) -> list[float]:
        if not text.strip():
            raise EmbeddingError("Cannot embed an empty query")
        return fake_vector(text)


def fake_vector(text: str) -> list[float]:
    return [1.0, 0.5, 0.25, float(len(text) % 5 + 1)]


@pytest.fixture
def fake_validator():
    return FakeValidator()


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()


@pytest.fixture
def make_processor(job_repo, store, fake_validator, fake_fetcher, fake_embedder):
    """Factory for a JobProcessor wired to the fake stages; kwargs override any stage."""

    def _make(**overrides) -> JobProcessor:
        kwargs = {
            "validator": fake_validator,
            "fetcher": fake_fetcher,
            "chunker": Chunker(max_tokens=50, overlap_tokens=10),
            "embedder": fake_embedder,
            "store": store,
            "retry_policy": RetryPolicy(max_retries=2, base_delay=0, max_delay=0),
        }
        kwargs.update(overrides)
        return JobProcessor(job_repo, **kwargs)

    return _make
