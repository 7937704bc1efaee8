"""Fixtures for CLI tests: isolated config, patched network and embeddings."""

from __future__ import annotations

import socket
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import yaml

from knowio.db.connection import Database
from knowio.ingest.fetcher import Fetcher
from knowio.ingest.validator import URLValidator
from knowio.jobs.repository import JobRepository

DOC_URL = "https://docs.example.com/guide"

DOC_HTML = b"""<html><head><title>Guide</title></head><body>
<h1>Guide</h1>
<p>Install the package with pip. Then run the init command once.</p>
<h2>Usage</h2>
<p>Search the knowledge base with a plain sentence.</p>
</body></html>"""

_ENV_VARS = (
    "KNOWIO_MAX_CONCURRENT_JOBS",
    "KNOWIO_MAX_RETRIES",
    "KNOWIO_RETRY_DELAY",
    "KNOWIO_JOB_TIMEOUT",
    "KNOWIO_STORE_BATCH_SIZE",
    "KNOWIO_SEARCH_THRESHOLD",
    "KNOWIO_SEARCH_LIMIT",
    "KNOWIO_EMBEDDING_MODEL",
    "KNOWIO_LOG_LEVEL",
)


def fake_embedding(model, input):
    return SimpleNamespace(
        data=[{"index": i, "embedding": [1.0, 0.5, 0.25, 0.125]} for i in range(len(input))]
    )


@pytest.fixture
def project(tmp_path, monkeypatch):
    """CWD is a fresh project directory with a 4-dimensional knowio.yaml."""
    monkeypatch.setattr("knowio.config._GLOBAL_CONFIG_PATH", tmp_path / "missing" / "config.yaml")
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.chdir(tmp_path)
    (tmp_path / "knowio.yaml").write_text(
        yaml.dump(
            {
                "embedding": {"model": "openai/text-embedding-3-small", "dimensions": 4},
                "store": {"dimensions": 4},
                "queue": {"retry_delay": 0, "max_retry_delay": 0},
            }
        ),
        encoding="utf-8",
    )
    return tmp_path


@pytest.fixture
def offline(project):
    """Public DNS, no robots.txt, canned HTML, and a fake embedding provider."""
    public = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("93.184.216.34", 0))]
    with patch("knowio.ingest.validator.socket.getaddrinfo", return_value=public), patch.object(
        URLValidator, "_load_robots", return_value=None
    ), patch.object(
        Fetcher, "_download", return_value=(DOC_HTML, "text/html", DOC_URL)
    ) as download, patch(
        "knowio.ingest.embedder.litellm.embedding", side_effect=fake_embedding
    ) as embedding:
        yield SimpleNamespace(download=download, embedding=embedding)


@pytest.fixture
def job_records(project):
    """Callable returning the jobs in the project database, newest first."""

    def _records():
        db = Database(project / ".knowio.db")
        try:
            jobs, _ = JobRepository(db).list_jobs()
        finally:
            db.close()
        return jobs

    return _records
