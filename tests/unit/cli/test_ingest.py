"""Tests for knowio ingest / retry / resume."""

from __future__ import annotations

from typer.testing import CliRunner

from knowio.cli.main import app
from knowio.errors import FetchError
from knowio.jobs.models import JobStatus

runner = CliRunner()

DOC_URL = "https://docs.example.com/guide"


def test_ingest_page(offline, job_records):
    result = runner.invoke(app, ["ingest", DOC_URL])

    assert result.exit_code == 0, result.output
    assert "1/1 pages" in result.output
    offline.download.assert_called_once()

    [job] = job_records()
    assert job.status is JobStatus.COMPLETED
    assert job.progress.chunks_embedded >= 1


def test_ingest_creates_database(offline, project):
    assert not (project / ".knowio.db").exists()
    runner.invoke(app, ["ingest", DOC_URL])
    assert (project / ".knowio.db").exists()


def test_ingest_passes_options(offline, job_records):
    runner.invoke(app, ["ingest", DOC_URL, "--follow-links", "--max-depth", "2", "--ignore-robots"])
    [job] = job_records()
    assert job.options.follow_links is True
    assert job.options.max_depth == 2
    assert job.options.respect_robots is False


def test_ingest_rejects_bad_depth(offline, job_records):
    result = runner.invoke(app, ["ingest", DOC_URL, "--max-depth", "11"])
    assert result.exit_code == 1
    assert "max_depth" in result.output
    assert job_records() == []


def test_ingest_rejects_malformed_url(offline, job_records):
    result = runner.invoke(app, ["ingest", "not a url"])
    assert result.exit_code == 1
    assert "Invalid ingestion request" in result.output
    assert job_records() == []


def test_ingest_fetch_failure_exits_1(offline, job_records):
    offline.download.side_effect = FetchError("HTTP 404 for 'https://docs.example.com/guide'")
    result = runner.invoke(app, ["ingest", DOC_URL])

    assert result.exit_code == 1
    assert "failed" in result.output
    [job] = job_records()
    assert job.status is JobStatus.FAILED
    assert job.error_message.startswith("Content fetch failed")


def test_ingest_ssrf_blocked(project, job_records):
    result = runner.invoke(app, ["ingest", "http://127.0.0.1/admin"])
    assert result.exit_code == 1
    [job] = job_records()
    assert job.status is JobStatus.FAILED
    assert "URL validation failed" in job.error_message


def test_retry_failed_job(offline, job_records):
    offline.download.side_effect = FetchError("HTTP 404")
    runner.invoke(app, ["ingest", DOC_URL])
    [failed] = job_records()

    offline.download.side_effect = None
    result = runner.invoke(app, ["retry", failed.id])

    assert result.exit_code == 0, result.output
    newest, _ = job_records()
    assert newest.id != failed.id
    assert newest.status is JobStatus.COMPLETED


def test_retry_completed_job_is_refused(offline, job_records):
    runner.invoke(app, ["ingest", DOC_URL])
    [job] = job_records()
    result = runner.invoke(app, ["retry", job.id])
    assert result.exit_code == 1
    assert len(job_records()) == 1


def test_retry_unknown_job(offline):
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["retry", "does-not-exist"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_retry_without_database(project):
    result = runner.invoke(app, ["retry", "abc"])
    assert result.exit_code == 1
    assert "No database found" in result.output


def test_resume_nothing_queued(offline):
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["resume"])
    assert result.exit_code == 0
    assert "No queued jobs" in result.output
