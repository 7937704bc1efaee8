"""Embed stage — LiteLLM embeddings for chunks and search queries.

All chunks of a call are embedded or none are: any provider failure or
malformed vector raises ``EmbeddingError`` and no partial result is returned.
"""

from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import dataclass

import litellm

from knowio.db.models import DocumentChunk, EmbeddedChunk
from knowio.errors import EmbeddingError

logger = logging.getLogger(__name__)

_PROVIDER_KEYS = {
    "openai": "OPENAI_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "azure": "AZURE_API_KEY",
}


@dataclass
class EmbeddingConfig:
    """Configuration for embedding generation."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 16
    max_input_chars: int = 8_000
    batch_delay: float = 0.1


class Embedder:
    """Turn chunks into ``EmbeddedChunk`` objects via ``litellm.embedding()``.

    Args:
        config: Model, expected dimensionality, request batch size,
            per-input character cap, and the pause between requests.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()
        if self._config.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self._config.batch_delay < 0:
            raise ValueError("batch_delay must be >= 0")

    @property
    def dimensions(self) -> int:
        return self._config.dimensions

    def embed(self, chunks: list[DocumentChunk]) -> list[EmbeddedChunk]:
        """Embed every chunk, preserving order.

        Raises:
            EmbeddingError: On a missing API key, a provider error, or a
                vector with the wrong size or non-finite values.
        """
        if not chunks:
            return []
        self._check_api_key()

        vectors: list[list[float]] = []
        size = self._config.batch_size
        for start in range(0, len(chunks), size):
            if start and self._config.batch_delay > 0:
                time.sleep(self._config.batch_delay)
            batch = chunks[start : start + size]
            vectors.extend(self._embed_texts([c.content for c in batch]))

        return [EmbeddedChunk.from_chunk(c, v) for c, v in zip(chunks, vectors)]

    def embed_query(self, text: str) -> list[float]:
        """Embed a single search query."""
        if not text.strip():
            raise EmbeddingError("Cannot embed an empty query")
        self._check_api_key()
        return self._embed_texts([text])[0]

    # ------------------------------------------------------------------
    # Provider call
    # ------------------------------------------------------------------

    def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        inputs = [t[: self._config.max_input_chars] for t in texts]
        try:
            response = litellm.embedding(model=self._config.model, input=inputs)
        except Exception as exc:
            raise EmbeddingError(f"{type(exc).__name__}: {exc}") from exc

        data = list(response.data)
        if len(data) != len(inputs):
            raise EmbeddingError(
                f"Provider returned {len(data)} embeddings for {len(inputs)} inputs"
            )
        if all(_field(item, "index") is not None for item in data):
            data.sort(key=lambda item: _field(item, "index"))

        vectors = [list(_field(item, "embedding") or []) for item in data]
        for vector in vectors:
            self._validate(vector)
        logger.debug("Embedded %d inputs with %s", len(inputs), self._config.model)
        return vectors

    def _validate(self, vector: list[float]) -> None:
        if len(vector) != self._config.dimensions:
            raise EmbeddingError(
                f"Invalid embedding dimensions: expected {self._config.dimensions}, "
                f"got {len(vector)}"
            )
        if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in vector):
            raise EmbeddingError("Embedding contains invalid values")

    def _check_api_key(self) -> None:
        """Raise EmbeddingError if no API key is available for the embedding model."""
        provider = self._config.model.split("/")[0].lower() if "/" in self._config.model else ""
        required_env = _PROVIDER_KEYS.get(provider)
        if required_env and not os.environ.get(required_env):
            raise EmbeddingError(
                f"No API key found for provider '{provider}'. "
                f"Set the {required_env} environment variable."
            )


def _field(item: object, name: str):
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)
