"""
SQLite key/value store
======================

- One ``kv`` table; values are opaque bytes.
- WAL + pragmatic PRAGMAs, matching the rest of the project's SQLite usage.
"""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path

from .base import PersistentStore

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value BLOB NOT NULL,
    updated_at REAL NOT NULL
)
"""


def connect(path: str) -> sqlite3.Connection:
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    # Autocommit; every write is a single statement.
    conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)

    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    # Reduce SQLITE_BUSY errors when another process holds the file
    conn.execute("PRAGMA busy_timeout=3000;")    # 3s

    conn.execute(_SCHEMA)
    return conn


class SqliteStore(PersistentStore):
    def __init__(self, path: str) -> None:
        self._conn = connect(path)

    def _read(self, key: str) -> bytes | None:
        row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return bytes(row[0]) if row else None

    def _write(self, key: str, value: bytes) -> None:
        self._conn.execute(
            "INSERT INTO kv(key, value, updated_at) VALUES(?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (key, sqlite3.Binary(value), time.time()),
        )

    def _remove(self, key: str) -> None:
        self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def _keys(self, prefix: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT key FROM kv WHERE substr(key, 1, ?) = ?", (len(prefix), prefix)
        ).fetchall()
        return [row[0] for row in rows]

    def close(self) -> None:
        self._conn.close()
