"""Domain models for chunks and the vector store."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union


def utc_now() -> str:
    """ISO-8601 UTC timestamp with microseconds (sorts lexically)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class ChunkMetadata:
    source_url: str
    title: str
    chunk_index: int
    section: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_url": self.source_url,
            "title": self.title,
            "section": self.section,
            "chunk_index": self.chunk_index,
        }


@dataclass
class DocumentChunk:
    """A contiguous piece of one page's text, addressed by (source_url, chunk_index)."""

    id: str
    content: str
    metadata: ChunkMetadata
    token_count: int

    @property
    def source_url(self) -> str:
        return self.metadata.source_url

    @property
    def chunk_index(self) -> int:
        return self.metadata.chunk_index


@dataclass
class EmbeddedChunk(DocumentChunk):
    embedding: list[float] = field(default_factory=list)
    embedded_at: str = field(default_factory=utc_now)

    @classmethod
    def from_chunk(cls, chunk: DocumentChunk, embedding: list[float]) -> EmbeddedChunk:
        return cls(
            id=chunk.id,
            content=chunk.content,
            metadata=chunk.metadata,
            token_count=chunk.token_count,
            embedding=list(embedding),
        )


# ---------------------------------------------------------------------------
# Store results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UpsertResult:
    id: str
    created: bool
    updated: bool


@dataclass(frozen=True)
class Stored:
    chunk_id: str


@dataclass(frozen=True)
class Updated:
    chunk_id: str


@dataclass(frozen=True)
class Failed:
    chunk_id: str
    reason: str


StoreOutcome = Union[Stored, Updated, Failed]


@dataclass
class BatchStoreResult:
    """Aggregate of per-chunk outcomes; ``stored + updated + failed`` equals the input size."""

    stored: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    outcomes: list[StoreOutcome] = field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: list[StoreOutcome]) -> BatchStoreResult:
        result = cls(outcomes=list(outcomes))
        for outcome in outcomes:
            if isinstance(outcome, Stored):
                result.stored += 1
            elif isinstance(outcome, Updated):
                result.updated += 1
            else:
                result.failed += 1
                result.errors.append(f"Chunk {outcome.chunk_id}: {outcome.reason}")
        return result

    @property
    def persisted(self) -> int:
        return self.stored + self.updated


@dataclass
class SearchResult:
    """One stored chunk with its similarity to a query.

    Source fields are always filled; ``metadata`` is empty when the caller
    asked for results without metadata.
    """

    id: str
    content: str
    metadata: dict[str, Any]
    similarity: float
    source_url: str
    title: str
    chunk_index: int
    section: str | None = None


@dataclass
class StoreStats:
    total_chunks: int
    unique_sources: int
    average_token_count: int
    last_updated: str | None


@dataclass
class ChunkPage:
    chunks: list[SearchResult]
    total: int
    has_more: bool


@dataclass
class SourceSummary:
    source_url: str
    title: str
    chunk_count: int
    last_updated: str | None


def metadata_json(chunk: DocumentChunk) -> str:
    return json.dumps(chunk.metadata.to_dict(), ensure_ascii=False)
