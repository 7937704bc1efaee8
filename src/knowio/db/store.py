"""Vector store over the ``document_chunks`` table.

Records are unique on ``(source_url, chunk_index)``: storing the same pair again
overwrites the earlier row in place and keeps its id. Similarity is cosine
similarity computed by sqlite-vec (``1 - vec_distance_cosine``).

The existence check and the write in ``store()`` run as two statements, so two
connections storing the same pair at the same moment can race; the UNIQUE
constraint turns the loser into a per-chunk failure rather than a duplicate.
Callers that re-ingest the same source concurrently must serialize themselves.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import struct

from knowio.db.connection import Database
from knowio.db.models import (
    BatchStoreResult,
    ChunkPage,
    EmbeddedChunk,
    Failed,
    SearchResult,
    SourceSummary,
    StoreOutcome,
    Stored,
    StoreStats,
    Updated,
    UpsertResult,
    metadata_json,
    utc_now,
)
from knowio.db.vectors import serialize_f32, validate_embedding
from knowio.errors import StorageError
from knowio.telemetry import NullTelemetry, Telemetry, timed

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 25
DEFAULT_SEARCH_LIMIT = 10
DEFAULT_SEARCH_THRESHOLD = 0.7
DEFAULT_PAGE_SIZE = 50

_RESULT_COLUMNS = "id, content, metadata, source_url, title, chunk_index, section"


class VectorStore:
    """Dedup-on-write storage, batched upsert and similarity search.

    Args:
        db: Database whose thread-local connections the store uses.
        dimensions: Embedding size every stored and queried vector must have.
        batch_size: Chunks per sub-batch in ``store_batch()``.
        telemetry: Receives one record per ``store_batch`` and ``search`` call.
    """

    def __init__(
        self,
        db: Database,
        *,
        dimensions: int = 1536,
        batch_size: int = DEFAULT_BATCH_SIZE,
        telemetry: Telemetry | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._db = db
        self.dimensions = dimensions
        self.batch_size = batch_size
        self._telemetry = telemetry or NullTelemetry()

    def _conn(self) -> sqlite3.Connection:
        try:
            return self._db.connection()
        except sqlite3.Error as exc:
            raise StorageError(f"Database unavailable: {exc}") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def store(self, chunk: EmbeddedChunk) -> UpsertResult:
        """Insert *chunk*, or overwrite the record with the same source and index.

        Returns:
            UpsertResult with the record id (the existing id on overwrite).

        Raises:
            StorageError: If the embedding has the wrong size or the write fails.
        """
        conn = self._conn()
        try:
            validate_embedding(chunk.embedding, self.dimensions)
            return self._upsert(conn, chunk)
        except (ValueError, OverflowError, struct.error, sqlite3.Error) as exc:
            if conn.in_transaction:
                conn.rollback()
            raise StorageError(f"Failed to store vector chunk: {exc}") from exc

    def _upsert(self, conn: sqlite3.Connection, chunk: EmbeddedChunk) -> UpsertResult:
        now = utc_now()
        meta = chunk.metadata
        row = conn.execute(
            "SELECT id FROM document_chunks WHERE source_url = ? AND chunk_index = ?",
            (meta.source_url, meta.chunk_index),
        ).fetchone()

        if row is not None:
            conn.execute(
                """
                UPDATE document_chunks
                SET title = ?, content = ?, section = ?, token_count = ?,
                    embedding = ?, metadata = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    meta.title,
                    chunk.content,
                    meta.section,
                    chunk.token_count,
                    serialize_f32(chunk.embedding),
                    metadata_json(chunk),
                    now,
                    row["id"],
                ),
            )
            conn.commit()
            return UpsertResult(id=row["id"], created=False, updated=True)

        conn.execute(
            """
            INSERT INTO document_chunks (
                id, source_url, title, content, section, chunk_index,
                token_count, embedding, metadata, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                chunk.id,
                meta.source_url,
                meta.title,
                chunk.content,
                meta.section,
                meta.chunk_index,
                chunk.token_count,
                serialize_f32(chunk.embedding),
                metadata_json(chunk),
                now,
                now,
            ),
        )
        conn.commit()
        return UpsertResult(id=chunk.id, created=True, updated=False)

    def store_batch(self, chunks: list[EmbeddedChunk]) -> BatchStoreResult:
        """Store *chunks* in sub-batches, recording one outcome per chunk.

        Per-chunk failures are reported in the result, never raised.

        Raises:
            StorageError: If no database connection can be opened at all.
        """
        with timed(self._telemetry, "store_batch", chunks=len(chunks)) as tags:
            self._conn()
            outcomes: list[StoreOutcome] = []
            for start in range(0, len(chunks), self.batch_size):
                for chunk in chunks[start : start + self.batch_size]:
                    outcomes.append(self._store_one(chunk))
            result = BatchStoreResult.from_outcomes(outcomes)
            tags.update(stored=result.stored, updated=result.updated, failed=result.failed)

        if result.failed:
            logger.warning(
                "store_batch: %d of %d chunks failed", result.failed, len(chunks)
            )
        return result

    def _store_one(self, chunk: EmbeddedChunk) -> StoreOutcome:
        try:
            upsert = self.store(chunk)
        except StorageError as exc:
            return Failed(chunk_id=chunk.id, reason=str(exc))
        if upsert.created:
            return Stored(chunk_id=upsert.id)
        return Updated(chunk_id=upsert.id)

    def delete_by_source(self, source_url: str) -> int:
        """Delete every record for *source_url*. Returns the number removed."""
        conn = self._conn()
        try:
            cur = conn.execute(
                "DELETE FROM document_chunks WHERE source_url = ?", (source_url,)
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to delete chunks for {source_url}: {exc}") from exc
        logger.info("Deleted %d chunks for %s", cur.rowcount, source_url)
        return cur.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def search(
        self,
        query_embedding: list[float],
        limit: int = DEFAULT_SEARCH_LIMIT,
        threshold: float = DEFAULT_SEARCH_THRESHOLD,
        include_metadata: bool = True,
    ) -> list[SearchResult]:
        """Return up to *limit* records with similarity strictly above *threshold*.

        Results are ordered by similarity, highest first.

        Raises:
            ValueError: If *limit* is less than 1.
            StorageError: If the query has the wrong size or the query fails.
        """
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")

        with timed(self._telemetry, "search", limit=limit, threshold=threshold) as tags:
            conn = self._conn()
            try:
                validate_embedding(query_embedding, self.dimensions)
                rows = conn.execute(
                    f"""
                    SELECT * FROM (
                        SELECT {_RESULT_COLUMNS},
                               1 - vec_distance_cosine(embedding, ?) AS similarity
                        FROM document_chunks
                    )
                    WHERE similarity > ?
                    ORDER BY similarity DESC
                    LIMIT ?
                    """,
                    (serialize_f32(query_embedding), threshold, limit),
                ).fetchall()
            except (ValueError, OverflowError, struct.error, sqlite3.Error) as exc:
                raise StorageError(f"Vector search failed: {exc}") from exc
            tags["results"] = len(rows)

        return [_row_to_result(r, include_metadata=include_metadata) for r in rows]

    def get_stats(self) -> StoreStats:
        """Aggregate counts over the whole table, computed on every call."""
        conn = self._conn()
        try:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COUNT(DISTINCT source_url) AS sources,
                       AVG(token_count) AS avg_tokens,
                       MAX(updated_at) AS last_updated
                FROM document_chunks
                """
            ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to get vector store stats: {exc}") from exc
        return StoreStats(
            total_chunks=row["total"],
            unique_sources=row["sources"],
            average_token_count=round(row["avg_tokens"] or 0),
            last_updated=row["last_updated"],
        )

    def get_chunks_by_source(
        self, source_url: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE
    ) -> ChunkPage:
        """Return one page of *source_url*'s chunks ordered by chunk index.

        Args:
            page: 1-based page number.
            page_size: Records per page.
        """
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be >= 1")
        offset = (page - 1) * page_size

        conn = self._conn()
        try:
            total = conn.execute(
                "SELECT COUNT(*) FROM document_chunks WHERE source_url = ?",
                (source_url,),
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT {_RESULT_COLUMNS}, 1.0 AS similarity
                FROM document_chunks
                WHERE source_url = ?
                ORDER BY chunk_index ASC
                LIMIT ? OFFSET ?
                """,
                (source_url, page_size, offset),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to get chunks for {source_url}: {exc}") from exc

        return ChunkPage(
            chunks=[_row_to_result(r) for r in rows],
            total=total,
            has_more=offset + page_size < total,
        )

    def list_sources(self) -> list[SourceSummary]:
        """Return one summary per ingested source URL, ordered by URL."""
        conn = self._conn()
        try:
            rows = conn.execute(
                """
                SELECT source_url, MAX(title) AS title, COUNT(*) AS chunk_count,
                       MAX(updated_at) AS last_updated
                FROM document_chunks
                GROUP BY source_url
                ORDER BY source_url
                """
            ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to list sources: {exc}") from exc
        return [
            SourceSummary(
                source_url=r["source_url"],
                title=r["title"] or "",
                chunk_count=r["chunk_count"],
                last_updated=r["last_updated"],
            )
            for r in rows
        ]

    def health_check(self) -> bool:
        """Return True if the table is queryable. Never raises."""
        try:
            self._db.connection().execute("SELECT 1 FROM document_chunks LIMIT 1").fetchone()
        except Exception as exc:
            logger.error("Vector store health check failed: %s", exc)
            return False
        return True


def _row_to_result(row: sqlite3.Row, include_metadata: bool = True) -> SearchResult:
    return SearchResult(
        id=row["id"],
        content=row["content"],
        metadata=json.loads(row["metadata"]) if include_metadata else {},
        similarity=float(row["similarity"]),
        source_url=row["source_url"],
        title=row["title"] or "",
        chunk_index=row["chunk_index"],
        section=row["section"],
    )
