"""Timestamped cache entries and their persisted envelope."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Generic, Mapping, Optional, TypeVar

T = TypeVar("T")


def within_ttl(timestamp: float, ttl: float, now: float) -> bool:
    """True while ``now`` is no more than ``ttl`` seconds past ``timestamp``."""

    return now - timestamp <= ttl


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """``data`` as fetched at ``timestamp`` (seconds since the epoch)."""

    data: T
    timestamp: float
    scope_id: Optional[str] = None

    def age(self, now: float) -> float:
        return now - self.timestamp

    def is_fresh(self, ttl: float, now: float) -> bool:
        return within_ttl(self.timestamp, ttl, now)

    def with_data(self, data: T) -> "CacheEntry[T]":
        """Replace ``data`` without touching the freshness timestamp."""

        return replace(self, data=data)

    def to_envelope(self, encode: Callable[[T], Any]) -> dict:
        envelope = {"data": encode(self.data), "timestamp": self.timestamp}
        if self.scope_id is not None:
            envelope["scopeId"] = self.scope_id
        return envelope

    @classmethod
    def from_envelope(
        cls, raw: Any, decode: Callable[[Any], T]
    ) -> Optional["CacheEntry[T]"]:
        """Decode a persisted envelope, returning ``None`` when it is unusable."""

        if not isinstance(raw, Mapping) or "data" not in raw:
            return None
        try:
            timestamp = float(raw.get("timestamp") or 0.0)
        except (TypeError, ValueError):
            return None
        return cls(
            data=decode(raw["data"]),
            timestamp=timestamp,
            scope_id=raw.get("scopeId"),
        )
