"""Job domain models and schemas.

Submission payloads, options, and progress are pydantic models; they are
stored as JSON text in ``ingestion_jobs`` and validated once when read back.
"""

from __future__ import annotations

import urllib.parse
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    computed_field,
    field_validator,
)

MAX_URL_LENGTH = 2048


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class IngestionOptions(BaseModel):
    """Per-job crawl options."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_depth: StrictInt = Field(default=3, ge=1, le=10, description="Crawl depth; the root page is depth 1")
    follow_links: StrictBool = Field(default=False, description="Follow same-host links from fetched pages")
    respect_robots: StrictBool = Field(default=True, description="Honour robots.txt for every fetched URL")


class IngestionRequest(BaseModel):
    """Structural validation of a submission payload."""

    model_config = ConfigDict(extra="forbid")

    url: StrictStr = Field(min_length=1, max_length=MAX_URL_LENGTH)
    options: IngestionOptions = Field(default_factory=IngestionOptions)

    @field_validator("url")
    @classmethod
    def url_has_scheme_and_host(cls, value: str) -> str:
        value = value.strip()
        parsed = urllib.parse.urlsplit(value)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("url must be absolute (scheme and host)")
        return value


class JobProgress(BaseModel):
    """Job progress counters."""

    pages_processed: int = Field(default=0, ge=0, description="Pages whose chunks were stored")
    pages_discovered: int = Field(default=0, ge=0, description="Pages that entered the work list")
    chunks_created: int = Field(default=0, ge=0)
    chunks_embedded: int = Field(default=0, ge=0, description="Chunks stored or updated")
    errors: list[str] = Field(default_factory=list, description="Job-level error messages")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def completion_rate(self) -> float:
        """Percentage of discovered pages that have been processed."""
        if self.pages_discovered == 0:
            return 0.0
        return round(self.pages_processed / self.pages_discovered * 100, 2)


class IngestionJob(BaseModel):
    """A durable ingestion job record."""

    id: str
    url: str
    options: IngestionOptions
    status: JobStatus
    progress: JobProgress = Field(default_factory=JobProgress)
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None
    error_message: str | None = None

    def to_status_dict(self) -> dict[str, Any]:
        """Payload for the status interface."""
        return {
            "job_id": self.id,
            "url": self.url,
            "status": self.status.value,
            "progress": self.progress.model_dump(),
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error_message": self.error_message,
        }


@dataclass
class JobResult:
    success: bool
    total_chunks: int = 0
    errors: list[str] = field(default_factory=list)
    processing_time_ms: float = 0.0


@dataclass
class QueueStats:
    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.running + self.completed + self.failed
