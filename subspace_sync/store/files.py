"""Gzip file store.

Each key gets one gzipped file under the store directory:
    <dir>/<quoted key>.gz

Writes go to a temporary sibling first and are moved into place with
``os.replace`` so a crash never leaves a half-written record behind.
"""
from __future__ import annotations

from pathlib import Path
from urllib.parse import quote, unquote
import gzip
import os

from .base import PersistentStore


class FileStore(PersistentStore):
    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self._dir = Path(directory)

    def _path(self, key: str) -> Path:
        self._dir.mkdir(parents=True, exist_ok=True)
        return self._dir / f"{quote(key, safe='')}.gz"

    def _read(self, key: str) -> bytes | None:
        p = self._path(key)
        if not p.exists():
            return None
        with gzip.open(p, "rb") as f:
            return f.read()

    def _write(self, key: str, value: bytes) -> None:
        p = self._path(key)
        tmp = p.with_suffix(".tmp")
        with gzip.open(tmp, "wb") as f:
            f.write(value)
        os.replace(tmp, p)

    def _remove(self, key: str) -> None:
        p = self._path(key)
        if p.exists():
            p.unlink()

    def _keys(self, prefix: str) -> list[str]:
        if not self._dir.is_dir():
            return []
        keys = (unquote(p.name[: -len(".gz")]) for p in self._dir.glob("*.gz"))
        return [key for key in keys if key.startswith(prefix)]
