"""Tests for the Database connection layer."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from knowio.db.connection import Database


def test_connect_creates_file(tmp_path):
    db_path = tmp_path / "nested" / ".knowio.db"
    db = Database(db_path)
    conn = db.connect()
    conn.close()
    assert db_path.exists()


def test_sqlite_vec_loads(tmp_path):
    db = Database(tmp_path / ".knowio.db")
    conn = db.connect()
    version = conn.execute("SELECT vec_version()").fetchone()[0]
    conn.close()
    assert version.startswith("v")


def test_foreign_keys_enabled(tmp_path):
    db = Database(tmp_path / ".knowio.db")
    conn = db.connect()
    result = conn.execute("PRAGMA foreign_keys").fetchone()[0]
    conn.close()
    assert result == 1


def test_wal_journal_mode(tmp_path):
    db = Database(tmp_path / ".knowio.db")
    conn = db.connect()
    mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
    conn.close()
    assert mode == "wal"


def test_busy_timeout_set(tmp_path):
    db = Database(tmp_path / ".knowio.db")
    conn = db.connect()
    timeout = conn.execute("PRAGMA busy_timeout").fetchone()[0]
    conn.close()
    assert timeout == 30_000


def test_row_factory_set(tmp_path):
    db = Database(tmp_path / ".knowio.db")
    conn = db.connect()
    conn.execute("CREATE TABLE t (x INTEGER)")
    conn.execute("INSERT INTO t VALUES (42)")
    row = conn.execute("SELECT x FROM t").fetchone()
    conn.close()
    assert row["x"] == 42


def test_connection_is_cached_per_thread(tmp_path):
    db = Database(tmp_path / ".knowio.db")
    main_conn = db.connection()
    assert db.connection() is main_conn

    other: list = []
    worker = threading.Thread(target=lambda: other.append(db.connection()))
    worker.start()
    worker.join()

    assert other[0] is not main_conn
    db.close()


def test_close_closes_every_thread_connection(tmp_path):
    db = Database(tmp_path / ".knowio.db")
    conns = [db.connection()]
    worker = threading.Thread(target=lambda: conns.append(db.connection()))
    worker.start()
    worker.join()

    db.close()

    for conn in conns:
        with pytest.raises(Exception):
            conn.execute("SELECT 1")
    # A fresh connection is opened after close().
    assert db.connection().execute("SELECT 1").fetchone()[0] == 1
    db.close()


def test_release_closes_only_calling_thread_connection(tmp_path):
    db = Database(tmp_path / ".knowio.db")
    main_conn = db.connection()

    released: list = []

    def use_and_release():
        released.append(db.connection())
        db.release()

    worker = threading.Thread(target=use_and_release)
    worker.start()
    worker.join()

    assert db._open == [main_conn]
    with pytest.raises(Exception):
        released[0].execute("SELECT 1")
    assert main_conn.execute("SELECT 1").fetchone()[0] == 1
    db.close()


def test_release_without_connection_is_noop(tmp_path):
    db = Database(tmp_path / ".knowio.db")
    db.release()
    assert db._open == []


def test_context_manager_closes_connection(tmp_path):
    db = Database(tmp_path / ".knowio.db")
    with db as conn:
        conn.execute("CREATE TABLE t (x INTEGER)")
    with pytest.raises(Exception):
        conn.execute("SELECT 1")


def test_context_manager_accepts_path_str(tmp_path):
    db = Database(str(tmp_path / ".knowio.db"))
    assert isinstance(db.db_path, Path)
    with db as conn:
        result = conn.execute("SELECT 1").fetchone()[0]
    assert result == 1
