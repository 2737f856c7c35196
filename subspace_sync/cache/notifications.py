"""
Per-user notification feed.

Polling pipeline
----------------
1. ``fetch`` reads the remote feed. It is coalesced per user, served from a
   short TTL cache, and throttled to one attempt per poll interval; a
   throttled read returns the last snapshot (or :data:`EMPTY_FEED`).
2. ``poll`` drops every id already in the seen-id ledger or already held in
   memory, records the rest as seen, and merges them in unread.
3. The merged list is sorted newest first, capped, persisted, and announced
   to subscribers and to the platform ``notifier``.

The seen-id ledger is persisted separately from the lists and keeps the most
recent ``SEEN_LIMIT`` ids, so a notification is not re-announced after its
record has been pruned or the process restarts.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
import time
from collections import Counter
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Mapping, Optional

from subspace_sync import maintenance
from subspace_sync.clients.remote import RemoteClient, Signer
from subspace_sync.config import notifications, remote
from subspace_sync.errors import RemoteError, ResponseShapeError
from subspace_sync.events import Broadcaster, Unsubscribe
from subspace_sync.models import Notification
from subspace_sync.store import PersistentStore, record_key

from .entry import within_ttl

logger = logging.getLogger(__name__)

SEEN_KEY = record_key("notifications", "seen-ids")
PREFS_KEY = record_key("notifications", "prefs")

_MENTION = re.compile(r"@\[(.*?)\]\((.*?)\)")

Notifier = Callable[[str, Mapping[str, Any]], Any]


@dataclass(frozen=True)
class FeedSnapshot:
    """One read of the remote feed."""

    notifications: tuple[Notification, ...]
    is_empty: bool
    fetched_at: float = 0.0


EMPTY_FEED = FeedSnapshot(notifications=(), is_empty=True)


def format_mentions(content: str) -> str:
    """Render ``@[name](address)`` mention markup as ``@name``."""

    if not content:
        return ""
    return _MENTION.sub(r"@\1", content)


def log_notification(title: str, payload: Mapping[str, Any]) -> None:
    logger.info("Notification: %s - %s", title, payload.get("content", ""))


class NotificationCenter:
    def __init__(
        self,
        client: RemoteClient,
        store: PersistentStore,
        *,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.time,
        ttl: Optional[float] = None,
        poll_interval: Optional[float] = None,
        max_stored: Optional[int] = None,
        seen_limit: Optional[int] = None,
        profiles_id: Optional[str] = None,
    ) -> None:
        self._client = client
        self._store = store
        self._notifier = notifier or log_notification
        self._clock = clock
        self._ttl = notifications.TTL if ttl is None else ttl
        self._poll_interval = (
            notifications.POLL_INTERVAL if poll_interval is None else poll_interval
        )
        self._max_stored = notifications.MAX_STORED if max_stored is None else max_stored
        self._seen_limit = notifications.SEEN_LIMIT if seen_limit is None else seen_limit
        self._profiles_id = profiles_id or remote.PROFILES_ID

        self._lists: dict[str, list[Notification]] = {}
        self._feeds: dict[str, FeedSnapshot] = {}
        self._last_fetch: dict[str, float] = {}
        self._in_flight: dict[str, asyncio.Task[FeedSnapshot]] = {}
        self._pollers: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._changes = Broadcaster("notifications")

        self._seen: dict[str, None] = dict.fromkeys(self._load_seen())
        self._prefs: dict[str, bool] = self._load_prefs()
        logger.info("Loaded %s seen notification ids", len(self._seen))

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get_notifications(self, user_id: str) -> list[Notification]:
        """Return the stored notifications for ``user_id``, newest first.

        Schedules a background poll when an event loop is running.
        """

        notes = self._list(user_id)
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return list(notes)
        if user_id not in self._in_flight:
            task = asyncio.ensure_future(self.poll(user_id))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return list(notes)

    def get_unread_count(
        self,
        user_id: str,
        community_id: Optional[str] = None,
        channel_id: Optional[str | int] = None,
    ) -> int:
        channel = None if channel_id is None else str(channel_id)
        return sum(
            1
            for n in self._list(user_id)
            if not n.is_read
            and (community_id is None or n.community_id == community_id)
            and (channel is None or n.channel_id == channel)
        )

    def has_unread(
        self,
        user_id: str,
        community_id: Optional[str] = None,
        channel_id: Optional[str | int] = None,
    ) -> bool:
        return self.get_unread_count(user_id, community_id, channel_id) > 0

    def unread_by_community(self, user_id: str) -> dict[str, int]:
        return dict(Counter(n.community_id for n in self._list(user_id) if not n.is_read))

    def subscribe(self, listener: Callable[[str], Any]) -> Unsubscribe:
        """Call ``listener(user_id)`` whenever that user's list changes."""

        return self._changes.subscribe(listener)

    # ------------------------------------------------------------------ #
    # Remote feed
    # ------------------------------------------------------------------ #

    async def fetch(self, user_id: str) -> FeedSnapshot:
        """Read the remote feed for ``user_id`` (cached, throttled, coalesced)."""

        now = self._clock()
        feed = self._feeds.get(user_id)
        if feed is not None and within_ttl(feed.fetched_at, self._ttl, now):
            return feed

        task = self._in_flight.get(user_id)
        if task is not None:
            return await asyncio.shield(task)

        last = self._last_fetch.get(user_id)
        if last is not None and now - last < self._poll_interval:
            logger.info("Throttling notification request for %s", user_id)
            return feed or EMPTY_FEED

        self._last_fetch[user_id] = now
        task = asyncio.create_task(self._fetch_feed(user_id), name=f"notifications:{user_id}")
        self._in_flight[user_id] = task
        task.add_done_callback(lambda _t: self._in_flight.pop(user_id, None))
        return await asyncio.shield(task)

    async def _fetch_feed(self, user_id: str) -> FeedSnapshot:
        logger.info("Fetching notifications for %s", user_id)
        payload = await self._client.call(
            f"{self._profiles_id}/get-notifications", body={"id": user_id}
        )
        raw = payload.get("notifications") if isinstance(payload, dict) else None
        if raw is None:
            raw = []
        if not isinstance(raw, list):
            raise ResponseShapeError("Notification payload has no 'notifications' list")

        notes = tuple(Notification.from_wire(item) for item in raw)
        snapshot = FeedSnapshot(notes, is_empty=not notes, fetched_at=self._clock())
        self._feeds[user_id] = snapshot
        logger.info("Found %s notifications for %s", len(notes), user_id)
        return snapshot

    async def poll(self, user_id: str) -> list[Notification]:
        """Fetch and merge new notifications; returns the ones that were new.

        Remote failures are logged, never raised.
        """

        if not self.is_enabled(user_id):
            logger.info("Notifications disabled for %s", user_id)
            return []
        try:
            feed = await self.fetch(user_id)
        except RemoteError as exc:
            logger.error("Error fetching notifications for %s: %s", user_id, exc)
            return []
        return self._merge(user_id, feed.notifications)

    def _merge(self, user_id: str, incoming: Iterable[Notification]) -> list[Notification]:
        existing = self._list(user_id)
        held = {n.id for n in existing}
        fresh: list[Notification] = []
        for note in incoming:
            if note.id in self._seen or note.id in held:
                continue
            held.add(note.id)
            self._remember_seen(note.id)
            fresh.append(replace(note, is_read=False))

        if not fresh:
            logger.debug("No new notifications for %s", user_id)
            return []

        self._save_seen()
        combined = sorted(existing + fresh, key=lambda n: n.timestamp, reverse=True)
        self._commit(user_id, combined[: self._max_stored])
        self._announce(fresh)
        return fresh

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    async def mark_read(
        self,
        community_id: str,
        channel_id: str | int,
        user_id: str,
        signer: Optional[Signer] = None,
    ) -> int:
        """Mark a channel read remotely, then locally. Returns the local count flipped."""

        logger.info("Marking notifications as read for %s/%s", community_id, channel_id)
        await self._client.call(
            f"{self._profiles_id}/mark-read",
            method="POST",
            body={"server_id": community_id, "channel_id": channel_id},
            needs_signer=True,
            signer=signer,
        )

        channel = str(channel_id)
        flipped = 0
        updated = []
        for note in self._list(user_id):
            if note.community_id == community_id and note.channel_id == channel and not note.is_read:
                note = note.mark_read()
                flipped += 1
            updated.append(note)
        if flipped:
            self._commit(user_id, updated)
        return flipped

    def clear(self, user_id: str) -> None:
        """Drop the stored list for ``user_id``; the seen ledger is kept."""

        self._feeds.pop(user_id, None)
        self._commit(user_id, [])

    # ------------------------------------------------------------------ #
    # Polling and preferences
    # ------------------------------------------------------------------ #

    def start_polling(self, user_id: str, interval: Optional[float] = None) -> None:
        self.stop_polling(user_id)
        self._pollers[user_id] = maintenance.startup(
            functools.partial(self.poll, user_id),
            self._poll_interval if interval is None else interval,
            name=f"notification-poll:{user_id}",
        )
        logger.info("Started notification polling for %s", user_id)

    def stop_polling(self, user_id: str) -> None:
        task = self._pollers.pop(user_id, None)
        if task is not None:
            task.cancel()
            logger.info("Stopped notification polling for %s", user_id)

    def is_polling(self, user_id: str) -> bool:
        task = self._pollers.get(user_id)
        return task is not None and not task.done()

    def is_enabled(self, user_id: str) -> bool:
        return self._prefs.get(user_id, True)

    def set_enabled(self, user_id: str, enabled: bool) -> None:
        self._prefs[user_id] = bool(enabled)
        self._store.set_json(PREFS_KEY, {"data": self._prefs, "timestamp": self._clock()})

    async def close(self) -> None:
        for user_id in list(self._pollers):
            await maintenance.shutdown(self._pollers.pop(user_id))
        tasks = list(self._background) + list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _announce(self, fresh: list[Notification]) -> None:
        by_community: dict[str, list[Notification]] = {}
        for note in fresh:
            by_community.setdefault(note.community_id, []).append(note)

        for community_id, notes in by_community.items():
            if len(notes) > notifications.GROUP_THRESHOLD:
                summary = f"{len(notes)} new messages"
                self._notify(
                    summary,
                    {
                        "community_id": community_id,
                        "community_name": notes[0].community_name or "Unknown Server",
                        "content": summary,
                    },
                )
                continue
            for note in notes:
                payload = note.to_dict()
                payload["content"] = format_mentions(note.content)
                self._notify(note.author_name or note.author_id or "Unknown User", payload)

    def _notify(self, title: str, payload: Mapping[str, Any]) -> None:
        try:
            self._notifier(title, payload)
        except Exception:
            logger.exception("Notifier failed for %r", title)

    def _commit(self, user_id: str, notes: list[Notification]) -> None:
        self._lists[user_id] = notes
        self._store.set_json(
            record_key("notifications", user_id),
            {
                "data": [n.to_dict() for n in notes],
                "scopeId": user_id,
                "timestamp": self._clock(),
            },
        )
        self._changes.emit(user_id)

    def _list(self, user_id: str) -> list[Notification]:
        notes = self._lists.get(user_id)
        if notes is None:
            notes = self._load_list(user_id)
            self._lists[user_id] = notes
        return notes

    def _load_list(self, user_id: str) -> list[Notification]:
        raw = self._store.get_json(record_key("notifications", user_id))
        data = raw.get("data") if isinstance(raw, dict) else None
        if not isinstance(data, list):
            return []
        notes = []
        for item in data:
            try:
                notes.append(Notification.from_dict(item))
            except ResponseShapeError as exc:
                logger.warning("Skipping corrupt notification for %s: %s", user_id, exc)
        logger.info("Loaded %s notifications for %s from storage", len(notes), user_id)
        return notes

    def _remember_seen(self, notification_id: str) -> None:
        self._seen[notification_id] = None
        while len(self._seen) > self._seen_limit:
            del self._seen[next(iter(self._seen))]

    def _load_seen(self) -> list[str]:
        raw = self._store.get_json(SEEN_KEY)
        data = raw.get("data") if isinstance(raw, dict) else raw
        if not isinstance(data, list):
            return []
        return [str(i) for i in data][-self._seen_limit :]

    def _save_seen(self) -> None:
        self._store.set_json(SEEN_KEY, {"data": list(self._seen), "timestamp": self._clock()})

    def _load_prefs(self) -> dict[str, bool]:
        raw = self._store.get_json(PREFS_KEY)
        data = raw.get("data") if isinstance(raw, dict) else None
        if not isinstance(data, dict):
            return {}
        return {str(k): bool(v) for k, v in data.items()}
