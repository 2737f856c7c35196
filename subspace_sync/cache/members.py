"""
Per-community member list cache.

Member lists are expensive for the backend to produce, so refreshes go
through a stricter limiter than the other caches: per community id at most
``MAX_ATTEMPTS`` attempts for the whole session, and never two within
``MIN_INTERVAL`` seconds. A refused attempt raises
:class:`~subspace_sync.errors.RateLimitedError` without touching the network.
Concurrent refreshes for one id share a single in-flight request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

from subspace_sync.clients.remote import RemoteClient, Signer
from subspace_sync.config import cache, members
from subspace_sync.errors import (
    RateLimitedError,
    RemoteError,
    ResponseShapeError,
    is_fatal,
)
from subspace_sync.events import Broadcaster, Unsubscribe
from subspace_sync.models import Member
from subspace_sync.store import PersistentStore, record_key

from .entry import CacheEntry

logger = logging.getLogger(__name__)

MemberListener = Callable[[str, list[Member]], Any]


@dataclass
class _Attempts:
    count: int = 0
    last: float = 0.0


class MemberRegistry:
    def __init__(
        self,
        client: RemoteClient,
        store: PersistentStore,
        *,
        clock: Callable[[], float] = time.time,
        ttl: Optional[float] = None,
        min_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        self._client = client
        self._store = store
        self._clock = clock
        self._ttl = cache.MEMBER_TTL if ttl is None else ttl
        self._min_interval = members.MIN_INTERVAL if min_interval is None else min_interval
        self._max_attempts = members.MAX_ATTEMPTS if max_attempts is None else max_attempts

        self._lists: dict[str, CacheEntry[tuple[Member, ...]]] = {}
        self._hydrated: set[str] = set()
        self._attempts: dict[str, _Attempts] = {}
        self._in_flight: dict[str, asyncio.Task[list[Member]]] = {}
        self._invalid: set[str] = set()
        self._changes = Broadcaster("members")

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def cached_members(self, community_id: str) -> Optional[list[Member]]:
        entry = self._entry(community_id)
        return list(entry.data) if entry else None

    def is_fresh(self, community_id: str) -> bool:
        entry = self._entry(community_id)
        return entry is not None and entry.is_fresh(self._ttl, self._clock())

    async def get_members(self, community_id: str) -> Optional[list[Member]]:
        """Return the member list, refreshing it when stale.

        Refusals and remote failures fall back to the cached list (possibly
        stale) or ``None`` when nothing was ever fetched.
        """

        entry = self._entry(community_id)
        if entry is not None and entry.is_fresh(self._ttl, self._clock()):
            return list(entry.data)

        try:
            return await self.refresh(community_id)
        except RateLimitedError as exc:
            logger.info("Members for %s not refreshed: %s", community_id, exc)
        except RemoteError as exc:
            logger.warning("Failed to fetch members for %s: %s", community_id, exc)
        return self.cached_members(community_id)

    # ------------------------------------------------------------------ #
    # Refresh
    # ------------------------------------------------------------------ #

    def is_blocked(self, community_id: str) -> bool:
        if community_id in self._invalid:
            return True
        attempts = self._attempts.get(community_id)
        if attempts is None:
            return False
        return (
            attempts.count >= self._max_attempts
            or self._clock() - attempts.last < self._min_interval
        )

    async def refresh(self, community_id: str) -> list[Member]:
        """Fetch the member list for ``community_id`` and replace the cache.

        Raises:
            RateLimitedError: the limiter refused the attempt.
            RemoteError: the remote call failed.
        """

        task = self._in_flight.get(community_id)
        if task is not None:
            logger.info("Joining in-flight member request for %s", community_id)
            return list(await asyncio.shield(task))

        if self.is_blocked(community_id):
            attempts = self._attempts.get(community_id, _Attempts())
            retry_after = None
            if community_id not in self._invalid and attempts.count < self._max_attempts:
                retry_after = max(0.0, self._min_interval - (self._clock() - attempts.last))
            logger.info("Member requests for %s are blocked by the rate limiter", community_id)
            raise RateLimitedError(community_id, retry_after=retry_after)

        self._record_attempt(community_id)
        task = asyncio.create_task(
            self._fetch(community_id), name=f"members-refresh:{community_id}"
        )
        self._in_flight[community_id] = task
        task.add_done_callback(lambda _t: self._in_flight.pop(community_id, None))
        return list(await asyncio.shield(task))

    def _record_attempt(self, community_id: str) -> None:
        attempts = self._attempts.setdefault(community_id, _Attempts())
        attempts.count += 1
        attempts.last = self._clock()
        logger.info(
            "Recorded member request %s/%s for %s",
            attempts.count,
            self._max_attempts,
            community_id,
        )

    async def _fetch(self, community_id: str) -> list[Member]:
        try:
            payload = await self._client.call(f"{community_id}/get-members")
            fetched = _parse_members(payload)
        except RemoteError as exc:
            if is_fatal(exc):
                logger.warning("Community %s has no usable member list: %s", community_id, exc)
                self._invalid.add(community_id)
            raise

        self._commit(community_id, CacheEntry(tuple(fetched), self._clock(), scope_id=community_id))
        logger.info("Cached %s members for %s", len(fetched), community_id)
        return fetched

    # ------------------------------------------------------------------ #
    # Local writes
    # ------------------------------------------------------------------ #

    def patch_nickname(
        self, community_id: str, member_id: str, nickname: Optional[str]
    ) -> bool:
        """Set one member's nickname in place, keeping the list timestamp.

        Returns ``False`` when the list or member is not cached.
        """

        entry = self._entry(community_id)
        if entry is None:
            return False
        patched = []
        found = False
        for member in entry.data:
            if member.id == member_id:
                member = replace(member, nickname=nickname or None)
                found = True
            patched.append(member)
        if not found:
            return False
        self._commit(community_id, entry.with_data(tuple(patched)))
        return True

    async def update_nickname(
        self,
        community_id: str,
        member_id: str,
        nickname: Optional[str],
        signer: Optional[Signer] = None,
    ) -> None:
        """Write the nickname remotely, then patch the cached list."""

        await self._client.call(
            f"{community_id}/update-nickname",
            method="POST",
            body={"nickname": nickname or ""},
            needs_signer=True,
            signer=signer,
        )
        self.patch_nickname(community_id, member_id, nickname)

    async def get_member(self, community_id: str, member_id: str) -> Optional[Member]:
        """Look up a single member remotely; ``None`` when the lookup fails."""

        try:
            payload = await self._client.call(
                f"{community_id}/single-member", body={"id": member_id}
            )
            return Member.from_dict(payload)
        except RemoteError as exc:
            logger.warning("Failed to fetch member %s of %s: %s", member_id, community_id, exc)
            return None

    def subscribe(self, listener: MemberListener) -> Unsubscribe:
        return self._changes.subscribe(listener)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _commit(self, community_id: str, entry: CacheEntry[tuple[Member, ...]]) -> None:
        self._lists[community_id] = entry
        self._hydrated.add(community_id)
        self._store.set_json(
            record_key("members", community_id),
            entry.to_envelope(lambda data: [m.to_dict() for m in data]),
        )
        self._changes.emit(community_id, list(entry.data))

    def _entry(self, community_id: str) -> Optional[CacheEntry[tuple[Member, ...]]]:
        if community_id not in self._hydrated:
            self._hydrated.add(community_id)
            key = record_key("members", community_id)
            try:
                entry = CacheEntry.from_envelope(
                    self._store.get_json(key),
                    lambda data: tuple(Member.from_dict(m) for m in data),
                )
            except (ResponseShapeError, TypeError) as exc:
                logger.warning("Dropping corrupt member list for %s: %s", community_id, exc)
                self._store.delete(key)
                entry = None
            if entry is not None:
                self._lists[community_id] = entry
        return self._lists.get(community_id)

    async def close(self) -> None:
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def _parse_members(payload: Any) -> list[Member]:
    raw = payload.get("members") if isinstance(payload, dict) else payload
    if not isinstance(raw, list):
        raise ResponseShapeError("Member payload has no 'members' list")
    return [Member.from_dict(m) for m in raw]
