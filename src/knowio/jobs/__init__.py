"""knowio ingestion jobs — models, durable records, processor, queue."""

from knowio.jobs.models import (
    IngestionJob,
    IngestionOptions,
    IngestionRequest,
    JobProgress,
    JobResult,
    JobStatus,
    QueueStats,
)
from knowio.jobs.processor import JobProcessor
from knowio.jobs.queue import JobQueue
from knowio.jobs.repository import JobRepository

__all__ = [
    "IngestionJob",
    "IngestionOptions",
    "IngestionRequest",
    "JobProcessor",
    "JobProgress",
    "JobQueue",
    "JobRepository",
    "JobResult",
    "JobStatus",
    "QueueStats",
]
