"""Dict-backed store used in tests and when persistence is disabled."""

from __future__ import annotations

from .base import PersistentStore


class MemoryStore(PersistentStore):
    def __init__(self) -> None:
        self._records: dict[str, bytes] = {}

    def _read(self, key: str) -> bytes | None:
        return self._records.get(key)

    def _write(self, key: str, value: bytes) -> None:
        self._records[key] = bytes(value)

    def _remove(self, key: str) -> None:
        self._records.pop(key, None)

    def _keys(self, prefix: str) -> list[str]:
        return [key for key in self._records if key.startswith(prefix)]
