"""Exception taxonomy for knowio.

Usage errors are raised synchronously at submission time. Stage errors are
raised by pipeline stages and translated into job state by the processor.
Storage errors signal that the database itself is unavailable or rejected a
write; they are never turned into per-chunk outcomes by the store's callers.
"""

from __future__ import annotations


class KnowioError(Exception):
    """Base class for all knowio errors."""


class UsageError(KnowioError, ValueError):
    """Raised when a job submission payload is malformed."""


class ConfigError(KnowioError, ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


class JobNotFoundError(KnowioError, LookupError):
    """Raised when a job id is unknown."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobStateError(KnowioError):
    """Raised when an operation is not allowed in the job's current state."""


class JobTimeoutError(KnowioError):
    """Raised inside a worker once the job's timeout watchdog has fired."""


class StorageError(KnowioError):
    """Raised when the vector store or job table cannot complete an operation."""


# ---------------------------------------------------------------------------
# Stage errors
# ---------------------------------------------------------------------------


class StageError(KnowioError):
    """Failure inside one pipeline stage.

    Attributes:
        stage: Stage name (validate, fetch, chunk, embed).
        retryable: True when repeating the same call may succeed.
    """

    stage = "unknown"

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ValidationFailure(StageError):
    """The submitted or discovered URL is not acceptable for ingestion."""

    stage = "validate"

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors) or "invalid URL")
        self.errors = list(errors)


class SsrfError(ValidationFailure):
    """Raised when a URL resolves to a private or reserved address."""

    def __init__(self, message: str) -> None:
        super().__init__([message])


class FetchError(StageError):
    """Fetching or converting a page failed."""

    stage = "fetch"


class ChunkingError(StageError):
    """A page's content could not be split into chunks."""

    stage = "chunk"


class EmbeddingError(StageError):
    """The embedding provider call failed or returned unusable vectors."""

    stage = "embed"
