"""knowio ingest stages — validate, fetch, chunk, embed."""

from knowio.ingest.chunker import Chunker, PageMetadata
from knowio.ingest.embedder import Embedder, EmbeddingConfig
from knowio.ingest.fetcher import FetchedPage, Fetcher
from knowio.ingest.validator import URLValidator, ValidationResult

__all__ = [
    "Chunker",
    "Embedder",
    "EmbeddingConfig",
    "FetchedPage",
    "Fetcher",
    "PageMetadata",
    "URLValidator",
    "ValidationResult",
]
