"""knowio database layer."""

from knowio.db.connection import Database
from knowio.db.migrations import MIGRATIONS, run_migrations
from knowio.db.schema import initialize
from knowio.db.store import VectorStore
from knowio.db.vectors import deserialize_f32, ensure_dimensions, serialize_f32

__all__ = [
    "Database",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "VectorStore",
    "ensure_dimensions",
    "serialize_f32",
    "deserialize_f32",
]
