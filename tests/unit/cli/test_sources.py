"""Tests for knowio sources / chunks."""

from __future__ import annotations

from typer.testing import CliRunner

from knowio.cli.main import app

runner = CliRunner()

DOC_URL = "https://docs.example.com/guide"


def test_sources_empty(offline):
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["sources"])
    assert result.exit_code == 0
    assert "No sources ingested yet" in result.output


def test_sources_after_ingest(offline):
    runner.invoke(app, ["ingest", DOC_URL])
    result = runner.invoke(app, ["sources"])
    assert result.exit_code == 0, result.output
    assert "Sources (1)" in result.output


def test_chunks_for_source(offline):
    runner.invoke(app, ["ingest", DOC_URL])
    result = runner.invoke(app, ["chunks", "--source", DOC_URL])
    assert result.exit_code == 0, result.output
    assert "Install" in result.output
    assert "More:" not in result.output


def test_chunks_unknown_source(offline):
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["chunks", "--source", "https://nowhere.example"])
    assert result.exit_code == 0
    assert "Source not found" in result.output


def test_chunks_rejects_bad_page(offline):
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["chunks", "--source", DOC_URL, "--page", "0"])
    assert result.exit_code == 1
