"""Embedding blob encoding and index dimensionality bookkeeping."""

from __future__ import annotations

import math
import sqlite3
import struct

from knowio.errors import StorageError

_DIMENSIONS_KEY = "dimensions"

# Largest finite float32; larger doubles cannot be packed.
FLOAT32_MAX = 3.4028234663852886e38


def serialize_f32(vector: list[float]) -> bytes:
    """Pack *vector* as little-endian float32, the format sqlite-vec reads."""
    return struct.pack(f"<{len(vector)}f", *vector)


def deserialize_f32(blob: bytes) -> list[float]:
    """Inverse of ``serialize_f32``."""
    count = len(blob) // 4
    return list(struct.unpack(f"<{count}f", blob))


def validate_embedding(vector: list[float], dimensions: int) -> None:
    """Raise ValueError unless *vector* has *dimensions* finite float32 values."""
    if len(vector) != dimensions:
        raise ValueError(
            f"embedding has {len(vector)} dimensions, index expects {dimensions}"
        )
    if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in vector):
        raise ValueError("embedding contains non-finite values")
    if any(abs(v) > FLOAT32_MAX for v in vector):
        raise ValueError("embedding contains values outside the float32 range")


def stored_dimensions(conn: sqlite3.Connection) -> int | None:
    """Return the dimensionality recorded for this database, if any."""
    row = conn.execute(
        "SELECT value FROM vector_config WHERE key = ?", (_DIMENSIONS_KEY,)
    ).fetchone()
    return int(row[0]) if row else None


def ensure_dimensions(conn: sqlite3.Connection, dimensions: int) -> int:
    """Record *dimensions* on first use; afterwards require it to match.

    Raises:
        ValueError: If *dimensions* is not positive.
        StorageError: If the database was created for a different size.
    """
    if dimensions < 1:
        raise ValueError(f"dimensions must be >= 1, got {dimensions}")

    existing = stored_dimensions(conn)
    if existing is None:
        conn.execute(
            "INSERT INTO vector_config (key, value) VALUES (?, ?)",
            (_DIMENSIONS_KEY, str(dimensions)),
        )
        conn.commit()
        return dimensions

    if existing != dimensions:
        raise StorageError(
            f"Database stores {existing}-dimensional embeddings; "
            f"configured model produces {dimensions}."
        )
    return existing
