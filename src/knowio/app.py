"""Composition root: build every collaborator from a ``KnowioConfig``.

Nothing in knowio is a module-level singleton; the CLI and tests call
``build_runtime()`` to get an isolated set of objects bound to one database.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from knowio.config import KnowioConfig
from knowio.db.connection import Database
from knowio.db.schema import initialize
from knowio.db.store import VectorStore
from knowio.ingest.chunker import Chunker
from knowio.ingest.embedder import Embedder, EmbeddingConfig
from knowio.ingest.fetcher import Fetcher
from knowio.ingest.validator import URLValidator
from knowio.jobs.processor import JobProcessor
from knowio.jobs.queue import JobQueue
from knowio.jobs.repository import JobRepository
from knowio.retry import RetryPolicy
from knowio.telemetry import NullTelemetry, Telemetry


@dataclass
class Runtime:
    config: KnowioConfig
    db: Database
    store: VectorStore
    jobs: JobRepository
    embedder: Embedder
    processor: JobProcessor
    queue: JobQueue

    def close(self, wait: bool = True) -> None:
        """Stop the worker pool and close all database connections."""
        self.queue.shutdown(wait=wait)
        self.db.close()


def build_runtime(
    config: KnowioConfig,
    db_path: Path | str,
    *,
    telemetry: Telemetry | None = None,
) -> Runtime:
    """Open *db_path*, apply migrations, and wire the pipeline."""
    telemetry = telemetry or NullTelemetry()

    db = Database(db_path)
    initialize(db.connection(), dimensions=config.store.dimensions)

    store = VectorStore(
        db,
        dimensions=config.store.dimensions,
        batch_size=config.store.batch_size,
        telemetry=telemetry,
    )
    jobs = JobRepository(db)
    validator = URLValidator(user_agent=config.fetch.user_agent)
    fetcher = Fetcher(
        user_agent=config.fetch.user_agent,
        timeout=config.fetch.timeout,
        max_bytes=config.fetch.max_bytes,
        max_redirects=config.fetch.max_redirects,
        url_guard=validator.check_ssrf,
    )
    embedder = Embedder(
        EmbeddingConfig(
            model=config.embedding.model,
            dimensions=config.embedding.dimensions,
            batch_size=config.embedding.batch_size,
            max_input_chars=config.embedding.max_input_chars,
            batch_delay=config.embedding.batch_delay,
        )
    )
    processor = JobProcessor(
        jobs,
        validator=validator,
        fetcher=fetcher,
        chunker=Chunker(
            max_tokens=config.chunker.max_tokens,
            overlap_tokens=config.chunker.overlap_tokens,
        ),
        embedder=embedder,
        store=store,
        retry_policy=RetryPolicy(
            max_retries=config.queue.max_retries,
            base_delay=config.queue.retry_delay,
            max_delay=config.queue.max_retry_delay,
        ),
        fan_out=config.queue.fan_out,
        max_pages=config.queue.max_pages,
        telemetry=telemetry,
    )
    queue = JobQueue(
        jobs,
        processor,
        max_concurrent_jobs=config.queue.max_concurrent_jobs,
        job_timeout=config.queue.job_timeout,
    )
    return Runtime(
        config=config,
        db=db,
        store=store,
        jobs=jobs,
        embedder=embedder,
        processor=processor,
        queue=queue,
    )
