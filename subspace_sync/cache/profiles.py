"""
User profile cache.

Profiles are read far more often than they change, so this registry leans on
caching and batching:

- ``get_profile`` throttles per id (``MIN_INTERVAL``) and shares in-flight
  requests. A throttled caller gets the expired entry instead of waiting.
- ``queue`` collects ids for ``BATCH_DELAY`` seconds (or until ``BATCH_SIZE``
  ids are waiting) and fetches them through the bulk endpoint.
- Primary names come from a separate, slower registry and are resolved in
  the background after the base fields land. Failures there never touch the
  base profile.

Every write goes through :meth:`ProfileRegistry.update`, which persists the
cache and notifies subscribers with the user id.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import fields, replace
from typing import Any, Awaitable, Callable, Iterable, Optional

from subspace_sync import maintenance
from subspace_sync.clients.names import NameResolver
from subspace_sync.clients.remote import RemoteClient
from subspace_sync.config import profiles, remote
from subspace_sync.errors import RemoteError, ResponseShapeError
from subspace_sync.events import Broadcaster, Unsubscribe
from subspace_sync.models import Profile
from subspace_sync.store import PersistentStore, record_key

from .entry import within_ttl

logger = logging.getLogger(__name__)

PROFILES_KEY = record_key("profiles")
_MUTABLE_FIELDS = {f.name for f in fields(Profile)} - {"id", "timestamp"}


class ProfileRegistry:
    def __init__(
        self,
        client: RemoteClient,
        store: PersistentStore,
        *,
        resolver: Optional[NameResolver] = None,
        clock: Callable[[], float] = time.time,
        ttl: Optional[float] = None,
        min_interval: Optional[float] = None,
        batch_delay: Optional[float] = None,
        batch_size: Optional[int] = None,
        profiles_id: Optional[str] = None,
    ) -> None:
        self._client = client
        self._store = store
        self._resolver = resolver
        self._clock = clock
        self._ttl = profiles.TTL if ttl is None else ttl
        self._min_interval = profiles.MIN_INTERVAL if min_interval is None else min_interval
        self._batch_delay = profiles.BATCH_DELAY if batch_delay is None else batch_delay
        self._batch_size = profiles.BATCH_SIZE if batch_size is None else batch_size
        self._profiles_id = profiles_id or remote.PROFILES_ID

        self._profiles: dict[str, Profile] = {}
        self._last_attempt: dict[str, float] = {}
        self._in_flight: dict[str, asyncio.Task[Profile]] = {}
        self._queue: dict[str, None] = {}
        self._flush_timer: Optional[asyncio.TimerHandle] = None
        self._background: set[asyncio.Task[Any]] = set()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._changes = Broadcaster("profile")

        self._load()

    # ------------------------------------------------------------------ #
    # Cache reads
    # ------------------------------------------------------------------ #

    def cached(self, user_id: str) -> Optional[Profile]:
        """Return the cached profile for ``user_id`` even when expired."""

        return self._profiles.get(user_id)

    def fresh(self, user_id: str) -> Optional[Profile]:
        profile = self._profiles.get(user_id)
        if profile is not None and within_ttl(profile.timestamp, self._ttl, self._clock()):
            return profile
        return None

    def cached_ids(self) -> list[str]:
        return list(self._profiles)

    def subscribe(self, listener: Callable[[str], Any]) -> Unsubscribe:
        """Call ``listener(user_id)`` after every profile update."""

        return self._changes.subscribe(listener)

    # ------------------------------------------------------------------ #
    # Single mutation point
    # ------------------------------------------------------------------ #

    def update(self, user_id: str, **changes: Any) -> Profile:
        """Merge ``changes`` into the cached profile, persist and notify."""

        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise TypeError(f"Unknown profile fields: {sorted(unknown)}")

        existing = self._profiles.get(user_id) or Profile(id=user_id)
        profile = replace(existing, **changes, id=user_id, timestamp=self._clock())
        self._profiles[user_id] = profile
        self._save()
        self._changes.emit(user_id)
        return profile

    # ------------------------------------------------------------------ #
    # Single fetch
    # ------------------------------------------------------------------ #

    async def get_profile(self, user_id: str, force_refresh: bool = False) -> Profile:
        """Return the profile for ``user_id``, fetching it when needed.

        Never raises for remote failures: the caller gets the previous
        (possibly expired) profile, or a bare ``Profile(user_id)``.
        """

        if not force_refresh:
            cached = self.fresh(user_id)
            if cached is not None:
                logger.debug("Using cached profile for %s", user_id)
                return cached

            last = self._last_attempt.get(user_id)
            if last is not None and self._clock() - last < self._min_interval:
                expired = self._profiles.get(user_id)
                if expired is not None:
                    logger.info("Request throttled for %s, using expired profile", user_id)
                    return expired
                logger.info("No cached data for %s, bypassing throttle for first load", user_id)

        self._last_attempt[user_id] = self._clock()

        task = self._in_flight.get(user_id)
        if task is None:
            task = asyncio.create_task(self._fetch_profile(user_id), name=f"profile:{user_id}")
            self._in_flight[user_id] = task
            task.add_done_callback(lambda _t: self._in_flight.pop(user_id, None))
        else:
            logger.info("Reusing pending request for %s", user_id)
        return await asyncio.shield(task)

    async def _fetch_profile(self, user_id: str) -> Profile:
        logger.info("Fetching profile for %s", user_id)
        try:
            payload = await self._client.call(
                f"{self._profiles_id}/profile", body={"id": user_id}
            )
            raw = payload.get("profile") if isinstance(payload, dict) else None
            if not isinstance(raw, dict):
                raise ResponseShapeError(f"Profile payload for {user_id} has no 'profile'")
        except RemoteError as exc:
            logger.error("Error fetching profile for %s: %s", user_id, exc)
            existing = self._profiles.get(user_id)
            if existing is not None:
                return existing
            # Expired timestamp: served only while the throttle window is open
            minimal = Profile(id=user_id, timestamp=0.0)
            self._profiles[user_id] = minimal
            return minimal

        profile = self.update(user_id, username=raw.get("username"), pfp=raw.get("pfp"))
        self._enrich([user_id])
        return profile

    # ------------------------------------------------------------------ #
    # Bulk fetch and micro-batching
    # ------------------------------------------------------------------ #

    async def get_bulk(self, user_ids: Iterable[str]) -> list[Profile]:
        """Return profiles for ``user_ids``, bulk-fetching the ones not fresh."""

        unique = list(dict.fromkeys(user_ids))
        if not unique:
            return []

        to_fetch = [uid for uid in unique if self.fresh(uid) is None]
        if to_fetch:
            logger.info("Bulk fetching %s profiles", len(to_fetch))
            try:
                payload = await self._client.call(
                    f"{self._profiles_id}/bulk-profile", body={"ids": json.dumps(to_fetch)}
                )
                fetched = _parse_bulk(payload)
            except RemoteError as exc:
                logger.error("Error bulk fetching profiles: %s", exc)
                for uid in to_fetch:
                    self._profiles.setdefault(uid, Profile(id=uid, timestamp=0.0))
            else:
                for raw in fetched:
                    self.update(str(raw["id"]), username=raw.get("username"), pfp=raw.get("pfp"))
                self._enrich([str(raw["id"]) for raw in fetched])
                logger.info("Successfully cached %s profiles", len(fetched))

        return [self._profiles.get(uid) or Profile(id=uid) for uid in unique]

    def queue(self, user_id: str) -> None:
        """Schedule ``user_id`` for the next bulk fetch unless it is fresh."""

        if self.fresh(user_id) is not None or user_id in self._queue:
            return
        self._queue[user_id] = None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; %s stays queued", user_id)
            return

        if len(self._queue) >= self._batch_size:
            self._spawn(self._flush_batch())
        elif self._flush_timer is None:
            self._flush_timer = loop.call_later(self._batch_delay, self._on_flush_timer)

    def warmup(self, user_ids: Iterable[str]) -> None:
        for user_id in user_ids:
            self.queue(user_id)

    def queued_ids(self) -> list[str]:
        return list(self._queue)

    def _on_flush_timer(self) -> None:
        self._flush_timer = None
        self._spawn(self._flush_batch())

    async def _flush_batch(self) -> None:
        batch = list(self._queue)[: self._batch_size]
        for user_id in batch:
            del self._queue[user_id]

        if self._queue and self._flush_timer is None:
            self._flush_timer = asyncio.get_running_loop().call_later(
                self._batch_delay, self._on_flush_timer
            )
        if batch:
            await self.get_bulk(batch)

    # ------------------------------------------------------------------ #
    # Primary name enrichment
    # ------------------------------------------------------------------ #

    def _enrich(self, user_ids: list[str]) -> None:
        if self._resolver is None:
            return
        pending = [
            uid
            for uid in user_ids
            if not (self._profiles.get(uid) and self._profiles[uid].name_resolved)
        ]
        if pending:
            self._spawn(self._resolve_names(pending))

    async def _resolve_names(self, user_ids: list[str]) -> None:
        step = profiles.NAME_BATCH_SIZE
        for start in range(0, len(user_ids), step):
            batch = user_ids[start : start + step]
            await asyncio.gather(*(self._resolve_name(uid) for uid in batch))
            if start + step < len(user_ids):
                await asyncio.sleep(profiles.NAME_BATCH_PAUSE)

    async def _resolve_name(self, user_id: str) -> None:
        try:
            name = await self._resolver.resolve(user_id)
        except Exception as exc:
            logger.warning("Failed to fetch primary name for %s: %s", user_id, exc)
            return
        if name:
            logger.info("Found primary name for %s: %s", user_id, name)
        self.update(user_id, primary_name=name or None, name_resolved=True)

    # ------------------------------------------------------------------ #
    # Expiry
    # ------------------------------------------------------------------ #

    def clear_expired(self) -> int:
        """Drop profiles older than the TTL; return how many were removed."""

        now = self._clock()
        expired = [
            uid
            for uid, p in self._profiles.items()
            if not within_ttl(p.timestamp, self._ttl, now)
        ]
        for uid in expired:
            del self._profiles[uid]
        if expired:
            logger.info("Cleared %s expired profiles from cache", len(expired))
            self._save()
        return len(expired)

    def start_cleanup(self, interval: Optional[float] = None) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return

        async def _cycle() -> None:
            self.clear_expired()

        self._cleanup_task = maintenance.startup(
            _cycle,
            profiles.CLEANUP_INTERVAL if interval is None else interval,
            name="profile-cleanup",
        )

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    def _load(self) -> None:
        raw = self._store.get_json(PROFILES_KEY)
        data = raw.get("data") if isinstance(raw, dict) else None
        if not isinstance(data, dict):
            return
        now = self._clock()
        for user_id, item in data.items():
            try:
                profile = Profile.from_dict({**item, "id": user_id})
            except (ResponseShapeError, TypeError, ValueError) as exc:
                logger.warning("Skipping corrupt cached profile %s: %s", user_id, exc)
                continue
            if within_ttl(profile.timestamp, self._ttl, now):
                self._profiles[user_id] = profile
        logger.info("Loaded %s profiles from cache", len(self._profiles))

    def _save(self) -> None:
        now = self._clock()
        data = {
            uid: p.to_dict()
            for uid, p in self._profiles.items()
            if within_ttl(p.timestamp, self._ttl, now)
        }
        self._store.set_json(PROFILES_KEY, {"data": data, "timestamp": now})

    # ------------------------------------------------------------------ #
    # Background tasks
    # ------------------------------------------------------------------ #

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background profile task failed", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait until queued fetches and name lookups have finished."""

        while self._background or self._flush_timer is not None:
            if self._background:
                await asyncio.gather(*list(self._background), return_exceptions=True)
            else:
                await asyncio.sleep(self._batch_delay)

    async def close(self) -> None:
        if self._flush_timer is not None:
            self._flush_timer.cancel()
            self._flush_timer = None
        await maintenance.shutdown(self._cleanup_task)
        self._cleanup_task = None
        tasks = list(self._background) + list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def _parse_bulk(payload: Any) -> list[dict]:
    if not isinstance(payload, dict) or not payload.get("success"):
        raise ResponseShapeError("Invalid bulk profile response")
    raw = payload.get("profiles")
    if not isinstance(raw, list):
        raise ResponseShapeError("Bulk profile response has no 'profiles' list")
    return [p for p in raw if isinstance(p, dict) and p.get("id")]
