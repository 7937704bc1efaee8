"""Tests for telemetry sinks and the timed() helper."""

from __future__ import annotations

import logging

import pytest

from knowio.telemetry import LoggingTelemetry, NullTelemetry, RecordingTelemetry, timed


def test_timed_records_success_and_tags():
    telemetry = RecordingTelemetry()
    with timed(telemetry, "search", limit=5) as tags:
        tags["results"] = 2

    [record] = telemetry.records
    assert record["operation"] == "search"
    assert record["success"] is True
    assert record["limit"] == 5
    assert record["results"] == 2
    assert record["duration_ms"] >= 0


def test_timed_records_failure_and_reraises():
    telemetry = RecordingTelemetry()
    with pytest.raises(RuntimeError):
        with timed(telemetry, "store_batch"):
            raise RuntimeError("boom")
    assert telemetry.records[0]["success"] is False


def test_null_telemetry_accepts_records():
    with timed(NullTelemetry(), "anything"):
        pass


def test_logging_telemetry_writes_structured_record(caplog):
    caplog.set_level(logging.INFO, logger="knowio.telemetry")
    LoggingTelemetry().record("process_job", 12.3456, True, job_id="abc")

    [record] = caplog.records
    assert "process_job finished in 12.3ms" in record.getMessage()
    assert record.job_id == "abc"
    assert record.duration_ms == 12.346
