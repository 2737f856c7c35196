"""
Persistent key/value stores.

Modules
=======

``base``
    Defines :class:`PersistentStore`, the failure-absorbing get/set/delete
    contract every cache persists through, plus :func:`record_key`.
``memory``
    :class:`MemoryStore`, a dict-backed store for tests.
``files``
    :class:`FileStore`, one gzip file per key with atomic replacement.
``sqlite``
    :class:`SqliteStore`, a single-table SQLite store.
"""

from __future__ import annotations

import logging
import os
import sqlite3

from .base import PersistentStore, record_key
from .files import FileStore
from .memory import MemoryStore
from .sqlite import SqliteStore

logger = logging.getLogger(__name__)


def open_store(backend: str, path: str) -> PersistentStore:
    """Return the store named by ``backend`` rooted at ``path``."""

    backend = (backend or "").lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "files":
        return FileStore(path)
    if backend == "sqlite":
        db_path = path if path.endswith(".db") else os.path.join(path, "subspace.db")
        try:
            return SqliteStore(db_path)
        except (OSError, sqlite3.Error) as exc:
            logger.warning("SQLite store unavailable at %s (%s); using memory store", db_path, exc)
            return MemoryStore()
    raise ValueError(f"Unknown store backend: {backend!r}")


__all__ = [
    "PersistentStore",
    "MemoryStore",
    "FileStore",
    "SqliteStore",
    "open_store",
    "record_key",
]
