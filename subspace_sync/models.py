"""Dataclass models for cached remote entities.

Wire shapes (as returned by the remote service and as persisted):

```
{"name": "...", "icon": "...", "owner": "<user>", "member_count": 3,
 "categories": [{"id": 1, "name": "General", "order_id": 1}],
 "channels": [{"id": 7, "name": "chat", "order_id": 1, "category_id": 1}]}
{"id": "<user>", "nickname": "nick"}
{"id": "<user>", "username": "...", "pfp": "<tx>", "primary_name": "..."}
{"message_id": "...", "user_id": "...", "server_id": "...", "channel_id": 7,
 "author_id": "...", "author_name": "...", "content": "...", "timestamp": 17000}
```

Models are frozen so that an optimistic patch and the authoritative snapshot
it replaced never share mutable state. ``from_dict`` raises
:class:`~subspace_sync.errors.ResponseShapeError` on malformed input.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, Mapping, Optional

from .errors import ResponseShapeError


def _drop_nones(d: Dict[str, Any]) -> Dict[str, Any]:
    """Return a shallow copy of ``d`` without keys mapped to ``None``."""
    return {k: v for k, v in d.items() if v is not None}


def normalize_category_id(value: Any) -> Optional[int]:
    """Coerce a wire ``category_id`` to ``int`` or ``None`` (uncategorized)."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text or text.lower() in ("null", "none", "nil"):
            return None
        try:
            return int(text)
        except ValueError:
            pass
    raise ResponseShapeError(f"Invalid category id: {value!r}")


def _require(raw: Mapping[str, Any], key: str, kind: str) -> Any:
    try:
        return raw[key]
    except (KeyError, TypeError) as exc:
        raise ResponseShapeError(f"{kind} payload missing '{key}'") from exc


def _as_int(value: Any, kind: str, key: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ResponseShapeError(f"{kind} field '{key}' is not an integer: {value!r}") from exc


@dataclass(frozen=True, slots=True)
class Category:
    id: int
    name: str
    order_id: int

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Category":
        return cls(
            id=_as_int(_require(raw, "id", "Category"), "Category", "id"),
            name=str(raw.get("name") or ""),
            order_id=_as_int(raw.get("order_id", 0), "Category", "order_id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "order_id": self.order_id}


@dataclass(frozen=True, slots=True)
class Channel:
    id: int
    name: str
    order_id: int
    category_id: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Channel":
        return cls(
            id=_as_int(_require(raw, "id", "Channel"), "Channel", "id"),
            name=str(raw.get("name") or ""),
            order_id=_as_int(raw.get("order_id", 0), "Channel", "order_id"),
            category_id=normalize_category_id(raw.get("category_id")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "order_id": self.order_id,
            "category_id": self.category_id,
        }


@dataclass(frozen=True, slots=True)
class CommunityAggregate:
    """Community metadata plus its categories and channels."""

    id: str
    name: str
    icon: Optional[str] = None
    owner_id: Optional[str] = None
    member_count: Optional[int] = None
    categories: tuple[Category, ...] = ()
    channels: tuple[Channel, ...] = ()

    @classmethod
    def from_dict(cls, community_id: str, raw: Any) -> "CommunityAggregate":
        if not isinstance(raw, Mapping):
            raise ResponseShapeError(
                f"Community {community_id} payload is not an object: {type(raw).__name__}"
            )
        categories = raw.get("categories") or []
        channels = raw.get("channels") or []
        if not isinstance(categories, list) or not isinstance(channels, list):
            raise ResponseShapeError(f"Community {community_id} has malformed category/channel lists")
        member_count = raw.get("member_count")
        return cls(
            id=str(raw.get("id") or community_id),
            name=str(raw.get("name") or ""),
            icon=raw.get("icon"),
            owner_id=raw.get("owner") or raw.get("owner_id"),
            member_count=(
                _as_int(member_count, "Community", "member_count")
                if member_count is not None
                else None
            ),
            categories=tuple(Category.from_dict(c) for c in categories),
            channels=tuple(Channel.from_dict(c) for c in channels),
        )

    def to_dict(self) -> Dict[str, Any]:
        base = {
            "id": self.id,
            "name": self.name,
            "icon": self.icon,
            "owner": self.owner_id,
            "member_count": self.member_count,
        }
        out = _drop_nones(base)
        out["categories"] = [c.to_dict() for c in self.categories]
        out["channels"] = [c.to_dict() for c in self.channels]
        return out

    def category_ids(self) -> set[int]:
        return {c.id for c in self.categories}

    def with_items(
        self,
        *,
        categories: Optional[Iterable[Category]] = None,
        channels: Optional[Iterable[Channel]] = None,
    ) -> "CommunityAggregate":
        """Return a copy with ``categories`` and/or ``channels`` replaced."""

        changes: Dict[str, Any] = {}
        if categories is not None:
            changes["categories"] = tuple(categories)
        if channels is not None:
            changes["channels"] = tuple(channels)
        return replace(self, **changes)


@dataclass(frozen=True, slots=True)
class Member:
    id: str
    nickname: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Member":
        return cls(id=str(_require(raw, "id", "Member")), nickname=raw.get("nickname") or None)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "nickname": self.nickname}


@dataclass(frozen=True, slots=True)
class Profile:
    """Cached user profile.

    ``name_resolved`` is set once the name-resolution pass has run, so a
    missing ``primary_name`` after enrichment is a cacheable answer.
    """

    id: str
    username: Optional[str] = None
    pfp: Optional[str] = None
    primary_name: Optional[str] = None
    name_resolved: bool = False
    timestamp: float = 0.0

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Profile":
        return cls(
            id=str(_require(raw, "id", "Profile")),
            username=raw.get("username"),
            pfp=raw.get("pfp"),
            primary_name=raw.get("primary_name") or raw.get("primaryName"),
            name_resolved=bool(raw.get("name_resolved", False)),
            timestamp=float(raw.get("timestamp") or 0.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        base = {
            "id": self.id,
            "username": self.username,
            "pfp": self.pfp,
            "primary_name": self.primary_name,
            "name_resolved": self.name_resolved,
            "timestamp": self.timestamp,
        }
        return _drop_nones(base)

    @property
    def display_name(self) -> str:
        return self.primary_name or self.username or self.id


@dataclass(frozen=True, slots=True)
class Notification:
    id: str
    recipient_id: str
    community_id: str
    channel_id: str
    author_id: str
    content: str
    timestamp: int
    is_read: bool = False
    author_name: Optional[str] = None
    channel_name: Optional[str] = None
    community_name: Optional[str] = None

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any]) -> "Notification":
        """Build from a remote feed entry (``message_id``/``server_id`` keys)."""

        message_id = _require(raw, "message_id", "Notification")
        try:
            timestamp = int(float(raw.get("timestamp") or 0))
        except (TypeError, ValueError) as exc:
            raise ResponseShapeError(f"Notification {message_id} has a bad timestamp") from exc
        return cls(
            id=str(message_id),
            recipient_id=str(raw.get("user_id") or ""),
            community_id=str(_require(raw, "server_id", "Notification")),
            channel_id=str(_require(raw, "channel_id", "Notification")),
            author_id=str(raw.get("author_id") or ""),
            content=str(raw.get("content") or ""),
            timestamp=timestamp,
            is_read=False,
            author_name=raw.get("author_name"),
            channel_name=raw.get("channel_name"),
            community_name=raw.get("server_name"),
        )

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Notification":
        """Build from the persisted shape produced by :meth:`to_dict`."""

        try:
            return cls(
                id=str(raw["id"]),
                recipient_id=str(raw.get("recipient_id") or ""),
                community_id=str(raw["community_id"]),
                channel_id=str(raw["channel_id"]),
                author_id=str(raw.get("author_id") or ""),
                content=str(raw.get("content") or ""),
                timestamp=int(raw.get("timestamp") or 0),
                is_read=bool(raw.get("is_read", False)),
                author_name=raw.get("author_name"),
                channel_name=raw.get("channel_name"),
                community_name=raw.get("community_name"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ResponseShapeError(f"Malformed stored notification: {raw!r}") from exc

    def to_dict(self) -> Dict[str, Any]:
        base = {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "community_id": self.community_id,
            "channel_id": self.channel_id,
            "author_id": self.author_id,
            "content": self.content,
            "timestamp": self.timestamp,
            "is_read": self.is_read,
            "author_name": self.author_name,
            "channel_name": self.channel_name,
            "community_name": self.community_name,
        }
        return _drop_nones(base)

    def mark_read(self) -> "Notification":
        return replace(self, is_read=True)


__all__ = [
    "Category",
    "Channel",
    "CommunityAggregate",
    "Member",
    "Notification",
    "Profile",
    "normalize_category_id",
]
