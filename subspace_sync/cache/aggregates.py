"""
Community aggregate cache.

:class:`EntitySyncManager` owns the community aggregate (metadata, categories
and channels) for every community id the session has touched.

- Reads are cache-first and never block: a stale or missing entry schedules a
  background refresh and the caller gets whatever is cached right now.
- At most one fetch per id is in flight. An explicit refresh that arrives
  while one is running sets a "run again" flag instead of issuing a second
  concurrent call, and waits for the follow-up run.
- A fatal response (not found, forbidden, malformed) quarantines the id: its
  cache entry is purged and later reads short-circuit until a forced refresh.
- Two states are kept per id: the last authoritative (server-derived)
  aggregate and the display state. They differ only while an optimistic
  patch from the reorder coordinator is pending, so rollback is a pure data
  operation. Only authoritative state is persisted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from subspace_sync.clients.remote import RemoteClient
from subspace_sync.config import cache, remote
from subspace_sync.errors import RemoteError, ResponseShapeError, is_fatal
from subspace_sync.events import Broadcaster, Unsubscribe
from subspace_sync.models import CommunityAggregate
from subspace_sync.store import PersistentStore, record_key

from .entry import CacheEntry

logger = logging.getLogger(__name__)

AggregateListener = Callable[[str, Optional[CommunityAggregate]], Any]


class EntitySyncManager:
    """Fetch, cache, refresh and quarantine community aggregates."""

    def __init__(
        self,
        client: RemoteClient,
        store: PersistentStore,
        *,
        clock: Callable[[], float] = time.time,
        ttl: Optional[float] = None,
        select_refresh_delay: Optional[float] = None,
        joined_ttl: Optional[float] = None,
        profiles_id: Optional[str] = None,
    ) -> None:
        self._client = client
        self._store = store
        self._clock = clock
        self._ttl = cache.AGGREGATE_TTL if ttl is None else ttl
        self._select_delay = (
            cache.AGGREGATE_SELECT_REFRESH_DELAY
            if select_refresh_delay is None
            else select_refresh_delay
        )
        self._joined_ttl = cache.COMMUNITY_LIST_TTL if joined_ttl is None else joined_ttl
        self._profiles_id = profiles_id or remote.PROFILES_ID

        self._entries: dict[str, CacheEntry[CommunityAggregate]] = {}
        self._authoritative: dict[str, CommunityAggregate] = {}
        self._pending: set[str] = set()
        self._hydrated: set[str] = set()
        self._invalid: set[str] = set()
        self._epochs: dict[str, int] = {}
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._rerun: set[str] = set()
        self._background: set[asyncio.Task[Any]] = set()

        self._joined: dict[str, CacheEntry[list[str]]] = {}
        self._joined_in_flight: dict[str, asyncio.Task[list[str]]] = {}

        self.active_id: Optional[str] = None
        self.current: Optional[CommunityAggregate] = None
        self._changes = Broadcaster("aggregate")

    # ------------------------------------------------------------------ #
    # READ helpers
    # ------------------------------------------------------------------ #

    def get_aggregate(self, community_id: str) -> Optional[CommunityAggregate]:
        """Return the cached aggregate, scheduling a refresh when stale or absent."""

        if community_id in self._invalid:
            logger.info("Community %s is quarantined; skipping fetch", community_id)
            return None

        entry = self._entry(community_id)
        if entry is None or not entry.is_fresh(self._ttl, self._clock()):
            self._schedule_refresh(community_id)
        else:
            logger.info(
                "Using cached community %s, age: %.0fs",
                community_id,
                entry.age(self._clock()),
            )
        return entry.data if entry else None

    def cached(self, community_id: str) -> Optional[CommunityAggregate]:
        """Return the display state without side effects."""

        entry = self._entry(community_id)
        return entry.data if entry else None

    def is_fresh(self, community_id: str) -> bool:
        entry = self._entry(community_id)
        return entry is not None and entry.is_fresh(self._ttl, self._clock())

    def is_invalid(self, community_id: str) -> bool:
        return community_id in self._invalid

    def is_refreshing(self, community_id: str) -> bool:
        return community_id in self._in_flight

    def authoritative(self, community_id: str) -> Optional[CommunityAggregate]:
        """Return the last server-derived aggregate for ``community_id``."""

        self._entry(community_id)
        return self._authoritative.get(community_id)

    def is_pending(self, community_id: str) -> bool:
        return community_id in self._pending

    def subscribe(self, listener: AggregateListener) -> Unsubscribe:
        """Call ``listener(community_id, aggregate)`` after each display change."""

        return self._changes.subscribe(listener)

    # ------------------------------------------------------------------ #
    # Active community
    # ------------------------------------------------------------------ #

    def select(self, community_id: Optional[str]) -> Optional[CommunityAggregate]:
        """Make ``community_id`` the active community and publish its cached state.

        A cached aggregate is shown immediately; it is refreshed right away
        when stale and after a short delay otherwise.
        """

        self.active_id = community_id
        if community_id is None or community_id in self._invalid:
            self.current = None
            return None

        entry = self._entry(community_id)
        if entry is None:
            self.current = None
            self._schedule_refresh(community_id)
            return None

        self.current = entry.data
        if entry.is_fresh(self._ttl, self._clock()):
            self._schedule_refresh(community_id, delay=self._select_delay)
        else:
            self._schedule_refresh(community_id)
        return entry.data

    # ------------------------------------------------------------------ #
    # Refresh
    # ------------------------------------------------------------------ #

    async def refresh(self, community_id: str, force: bool = False) -> None:
        """Fetch ``community_id`` and replace its cached aggregate.

        ``force`` lifts a quarantine first. Transient failures propagate to
        the caller after the remote client's retries are exhausted; the
        previously cached aggregate is left untouched.
        """

        if community_id in self._invalid:
            if not force:
                logger.info("Community %s is quarantined; refresh skipped", community_id)
                return
            logger.info("Clearing quarantine for community %s", community_id)
            self._invalid.discard(community_id)

        task = self._in_flight.get(community_id)
        if task is None:
            task = self._start(community_id)
        else:
            logger.info("Refresh already running for %s; queued a follow-up run", community_id)
            self._rerun.add(community_id)
        await asyncio.shield(task)

    def _start(self, community_id: str) -> asyncio.Task[None]:
        task = asyncio.create_task(
            self._run(community_id), name=f"aggregate-refresh:{community_id}"
        )
        self._in_flight[community_id] = task
        return task

    async def _run(self, community_id: str) -> None:
        try:
            while True:
                self._rerun.discard(community_id)
                try:
                    await self._fetch_once(community_id)
                except RemoteError as exc:
                    if community_id not in self._rerun or community_id in self._invalid:
                        raise
                    logger.info(
                        "Refresh of community %s failed, running queued refresh: %s",
                        community_id,
                        exc,
                    )
                    continue
                if community_id not in self._rerun:
                    return
                logger.info("Running queued refresh for community %s", community_id)
        finally:
            self._rerun.discard(community_id)
            if self._in_flight.get(community_id) is asyncio.current_task():
                del self._in_flight[community_id]

    async def _fetch_once(self, community_id: str) -> None:
        epoch = self._epochs.get(community_id, 0)
        logger.info("Fetching community %s", community_id)
        try:
            payload = await self._client.call(f"{community_id}/")
            aggregate = CommunityAggregate.from_dict(community_id, payload)
        except RemoteError as exc:
            if is_fatal(exc):
                logger.error("Fatal error fetching community %s: %s", community_id, exc)
                self.mark_invalid(community_id)
            raise

        if self._epochs.get(community_id, 0) != epoch or community_id in self._invalid:
            logger.info("Discarding superseded result for community %s", community_id)
            return
        self._commit(community_id, aggregate)

    def _commit(self, community_id: str, aggregate: CommunityAggregate) -> None:
        previous = self._entries.get(community_id)
        entry = CacheEntry(aggregate, self._clock())
        self._entries[community_id] = entry
        self._authoritative[community_id] = aggregate
        self._pending.discard(community_id)
        self._hydrated.add(community_id)
        self._store.set_json(
            record_key("aggregate", community_id),
            entry.to_envelope(CommunityAggregate.to_dict),
        )
        logger.info(
            "Cached community %s (%s categories, %s channels)",
            community_id,
            len(aggregate.categories),
            len(aggregate.channels),
        )
        if previous is None or previous.data != aggregate:
            self._publish(community_id, aggregate)

    # ------------------------------------------------------------------ #
    # Optimistic patches
    # ------------------------------------------------------------------ #

    def apply_local(self, community_id: str, aggregate: CommunityAggregate) -> None:
        """Replace the display state without touching the authoritative copy."""

        entry = self._entry(community_id)
        if entry is None:
            raise KeyError(f"Community {community_id} is not cached")
        self._entries[community_id] = entry.with_data(aggregate)
        if aggregate == self._authoritative.get(community_id):
            self._pending.discard(community_id)
        else:
            self._pending.add(community_id)
        self._publish(community_id, aggregate)

    # ------------------------------------------------------------------ #
    # Invalidation
    # ------------------------------------------------------------------ #

    def mark_invalid(self, community_id: str) -> None:
        """Purge ``community_id`` and stop fetching it until a forced refresh."""

        logger.warning("Marking community %s invalid", community_id)
        self._invalid.add(community_id)
        self._evict(community_id)

    def clear_cache(self) -> None:
        """Evict every cached aggregate from memory and the store."""

        prefix = record_key("aggregate", "")
        stored = {key[len(prefix):] for key in self._store.keys(prefix)}
        for community_id in set(self._entries) | self._hydrated | set(self._in_flight) | stored:
            self._evict(community_id)
        self._hydrated.clear()
        logger.info("Cleared community cache")

    def _evict(self, community_id: str) -> None:
        self._epochs[community_id] = self._epochs.get(community_id, 0) + 1
        had_entry = self._entries.pop(community_id, None) is not None
        self._authoritative.pop(community_id, None)
        self._pending.discard(community_id)
        self._hydrated.add(community_id)
        self._store.delete(record_key("aggregate", community_id))
        if had_entry or self.active_id == community_id:
            self._publish(community_id, None)

    # ------------------------------------------------------------------ #
    # Joined community ids
    # ------------------------------------------------------------------ #

    def joined_ids(self, user_id: str) -> Optional[list[str]]:
        """Return the cached community ids ``user_id`` has joined."""

        entry = self._joined.get(user_id)
        if entry is None:
            entry = CacheEntry.from_envelope(
                self._store.get_json(record_key("joined", user_id)),
                lambda data: [str(cid) for cid in data],
            )
            if entry is not None:
                self._joined[user_id] = entry

        if entry is None or not entry.is_fresh(self._joined_ttl, self._clock()):
            if user_id not in self._joined_in_flight and _has_running_loop():
                self._spawn(self.refresh_joined(user_id), f"joined:{user_id}")
        return list(entry.data) if entry else None

    async def refresh_joined(self, user_id: str) -> list[str]:
        task = self._joined_in_flight.get(user_id)
        if task is None:
            task = asyncio.create_task(self._fetch_joined(user_id))
            self._joined_in_flight[user_id] = task
            task.add_done_callback(lambda _t: self._joined_in_flight.pop(user_id, None))
        return await asyncio.shield(task)

    async def _fetch_joined(self, user_id: str) -> list[str]:
        logger.info("Fetching joined communities for %s", user_id)
        payload = await self._client.call(
            f"{self._profiles_id}/profile", body={"id": user_id}
        )
        ids = _parse_joined(payload)
        entry = CacheEntry(ids, self._clock(), scope_id=user_id)
        self._joined[user_id] = entry
        self._store.set_json(record_key("joined", user_id), entry.to_envelope(list))
        logger.info("User %s has joined %s communities", user_id, len(ids))
        return list(ids)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _entry(self, community_id: str) -> Optional[CacheEntry[CommunityAggregate]]:
        if community_id not in self._hydrated:
            self._hydrated.add(community_id)
            self._hydrate(community_id)
        return self._entries.get(community_id)

    def _hydrate(self, community_id: str) -> None:
        key = record_key("aggregate", community_id)
        raw = self._store.get_json(key)
        if raw is None:
            return
        try:
            entry = CacheEntry.from_envelope(
                raw, lambda data: CommunityAggregate.from_dict(community_id, data)
            )
        except ResponseShapeError as exc:
            logger.warning("Dropping corrupt cached community %s: %s", community_id, exc)
            self._store.delete(key)
            return
        if entry is not None:
            self._entries[community_id] = entry
            self._authoritative[community_id] = entry.data
            logger.info("Loaded community %s from storage", community_id)

    def _publish(self, community_id: str, aggregate: Optional[CommunityAggregate]) -> None:
        if self.active_id == community_id:
            self.current = aggregate
        self._changes.emit(community_id, aggregate)

    def _schedule_refresh(self, community_id: str, delay: float = 0.0) -> None:
        if not _has_running_loop():
            logger.debug("No running event loop; background refresh of %s skipped", community_id)
            return
        if delay > 0:
            self._spawn(self._delayed_refresh(community_id, delay), f"refresh:{community_id}")
            return
        if community_id in self._in_flight:
            return
        task = self._start(community_id)
        self._spawn(self._quiet(community_id, task), f"refresh:{community_id}")

    async def _delayed_refresh(self, community_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        if community_id in self._invalid:
            return
        task = self._in_flight.get(community_id) or self._start(community_id)
        await self._quiet(community_id, task)

    async def _quiet(self, community_id: str, task: Awaitable[None]) -> None:
        """Await a background refresh, logging instead of raising."""

        try:
            await task
        except RemoteError as exc:
            if is_fatal(exc):
                logger.warning("Community %s quarantined: %s", community_id, exc)
            else:
                logger.warning(
                    "Background refresh of community %s failed, will retry later: %s",
                    community_id,
                    exc,
                )

    def _spawn(self, coro: Awaitable[Any], name: str) -> None:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, RemoteError):
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)
        elif exc is not None:
            logger.warning("Background task %s failed: %s", task.get_name(), exc)

    async def close(self) -> None:
        tasks = list(self._background) + list(self._in_flight.values()) + list(
            self._joined_in_flight.values()
        )
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._in_flight.clear()
        self._joined_in_flight.clear()


def _has_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def _parse_joined(payload: Any) -> list[str]:
    try:
        raw = payload["profile"].get("servers_joined", "[]")
    except (KeyError, TypeError, AttributeError) as exc:
        raise ResponseShapeError("Profile payload missing 'profile'") from exc

    if isinstance(raw, str):
        if raw.strip() in ("", "{}"):
            return []
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise ResponseShapeError(f"servers_joined is not JSON: {raw[:80]!r}") from exc
    if isinstance(raw, dict) and not raw:
        return []
    if not isinstance(raw, list):
        raise ResponseShapeError(f"servers_joined is not a list: {type(raw).__name__}")
    return [str(cid) for cid in raw]
