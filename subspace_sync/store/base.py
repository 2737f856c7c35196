"""
Durable key/value persistence shared by every cache.

Backends implement ``_read``/``_write``/``_remove``/``_keys`` and may raise freely.
The public ``get``/``set``/``delete`` wrappers absorb every storage failure
(quota, disabled medium, corrupt record) and log it: the in-memory caches stay
authoritative for the session, so a failed write only costs restart warmth.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from typing import Any

from subspace_sync.errors import PersistenceError

logger = logging.getLogger(__name__)

_ABSORBED = (OSError, sqlite3.Error, ValueError, TypeError, PersistenceError)


class PersistentStore(ABC):
    """Abstract bytes store with JSON conveniences."""

    @abstractmethod
    def _read(self, key: str) -> bytes | None: ...

    @abstractmethod
    def _write(self, key: str, value: bytes) -> None: ...

    @abstractmethod
    def _remove(self, key: str) -> None: ...

    @abstractmethod
    def _keys(self, prefix: str) -> list[str]: ...

    def close(self) -> None:
        """Release backend resources. Default: nothing to release."""

    # ------------------------------------------------------------------ #
    # Public API (never raises)
    # ------------------------------------------------------------------ #

    def get(self, key: str) -> bytes | None:
        try:
            return self._read(key)
        except _ABSORBED as exc:
            logger.warning("Failed to read %s from %s: %s", key, type(self).__name__, exc)
            return None

    def set(self, key: str, value: bytes) -> None:
        try:
            self._write(key, value)
        except _ABSORBED as exc:
            logger.warning("Failed to write %s to %s: %s", key, type(self).__name__, exc)

    def delete(self, key: str) -> None:
        try:
            self._remove(key)
        except _ABSORBED as exc:
            logger.warning("Failed to delete %s from %s: %s", key, type(self).__name__, exc)

    def keys(self, prefix: str = "") -> list[str]:
        """Return the stored keys starting with ``prefix``, sorted."""

        try:
            return sorted(self._keys(prefix))
        except _ABSORBED as exc:
            logger.warning("Failed to list %s* in %s: %s", prefix, type(self).__name__, exc)
            return []

    def get_json(self, key: str) -> Any | None:
        """Return the decoded JSON record for ``key``; corrupt records read as ``None``."""

        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            logger.warning("Discarding corrupt record %s: %s", key, exc)
            return None

    def set_json(self, key: str, value: Any) -> None:
        try:
            raw = json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as exc:
            logger.warning("Record %s is not JSON serializable: %s", key, exc)
            return
        self.set(key, raw)


def record_key(kind: str, scope_id: str | None = None) -> str:
    """Stable persisted key for a (kind, scope) pair, e.g. ``members:<id>``."""

    return kind if scope_id is None else f"{kind}:{scope_id}"
