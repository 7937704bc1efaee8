"""Operation telemetry collaborator.

The store and the job processor report one record per timed operation to a
``Telemetry`` object handed to them at construction. The default sink drops
everything; ``LoggingTelemetry`` writes a structured log line per record.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Telemetry(Protocol):
    def record(
        self, operation: str, duration_ms: float, success: bool, **tags: Any
    ) -> None: ...


class NullTelemetry:
    """Discard all records."""

    def record(
        self, operation: str, duration_ms: float, success: bool, **tags: Any
    ) -> None:
        return None


class LoggingTelemetry:
    """Write each record to the ``knowio.telemetry`` logger at INFO."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def record(
        self, operation: str, duration_ms: float, success: bool, **tags: Any
    ) -> None:
        self._log.info(
            "%s finished in %.1fms (success=%s)",
            operation,
            duration_ms,
            success,
            extra={
                "operation": operation,
                "duration_ms": round(duration_ms, 3),
                "success": success,
                **tags,
            },
        )


class RecordingTelemetry:
    """Keep records in memory for later inspection."""

    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []

    def record(
        self, operation: str, duration_ms: float, success: bool, **tags: Any
    ) -> None:
        self.records.append(
            {"operation": operation, "duration_ms": duration_ms, "success": success, **tags}
        )


@contextmanager
def timed(telemetry: Telemetry, operation: str, **tags: Any) -> Iterator[dict[str, Any]]:
    """Time the enclosed block and report it to *telemetry*.

    The yielded dict can be filled with extra tags while the block runs.
    An exception marks the record as failed and propagates.
    """
    extra: dict[str, Any] = dict(tags)
    start = time.perf_counter()
    success = True
    try:
        yield extra
    except BaseException:
        success = False
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        telemetry.record(operation, duration_ms, success, **extra)
