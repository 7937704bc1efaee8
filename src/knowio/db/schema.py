"""Database schema initialization."""

from __future__ import annotations

import sqlite3

from knowio.db.migrations import run_migrations
from knowio.db.vectors import ensure_dimensions


def initialize(conn: sqlite3.Connection, dimensions: int | None = None) -> None:
    """Initialize the database schema via the migration runner (idempotent).

    Args:
        conn: Open connection with sqlite-vec loaded.
        dimensions: Embedding size to record (or verify) for the vector index.
            ``None`` leaves the index configuration untouched.
    """
    run_migrations(conn)
    if dimensions is not None:
        ensure_dimensions(conn, dimensions)
