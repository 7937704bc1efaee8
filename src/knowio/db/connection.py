"""SQLite connection layer with sqlite-vec extension.

Worker threads each get their own connection (sqlite3 connections must not be
shared across threads); ``Database.connection()`` caches one per thread.
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import sqlite_vec

# Seconds a writer waits on a locked database before sqlite3 raises.
DB_TIMEOUT = 30


class Database:
    """Project SQLite database with sqlite-vec vector functions loaded."""

    def __init__(self, db_path: Path | str) -> None:
        """Store the database path. Connections are opened lazily.

        Args:
            db_path: Path to the SQLite database file (created if missing).
        """
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._lock = threading.Lock()
        self._open: list[sqlite3.Connection] = []
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Open a new connection, load sqlite-vec, and return it.

        The caller owns the returned connection and must close it.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=DB_TIMEOUT, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.enable_load_extension(True)
        try:
            sqlite_vec.load(conn)
        finally:
            conn.enable_load_extension(False)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute(f"PRAGMA busy_timeout = {DB_TIMEOUT * 1000}")
        return conn

    def connection(self) -> sqlite3.Connection:
        """Return this thread's cached connection, opening it on first use."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self.connect()
            self._local.conn = conn
            with self._lock:
                self._open.append(conn)
        return conn

    def release(self) -> None:
        """Close the calling thread's cached connection, if it has one."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        self._local.conn = None
        with self._lock:
            self._open = [c for c in self._open if c is not conn]
        conn.close()

    def close(self) -> None:
        """Close every connection handed out by ``connection()``."""
        with self._lock:
            conns, self._open = self._open, []
        for conn in conns:
            conn.close()
        self._local = threading.local()

    def __enter__(self) -> sqlite3.Connection:
        """Open the database and return the connection (context manager support)."""
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        """Close the connection when leaving the context manager."""
        if self._conn:
            self._conn.close()
            self._conn = None
