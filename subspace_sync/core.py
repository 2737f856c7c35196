"""Facade wiring one store, one remote client and every cache manager."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, Optional

from subspace_sync.cache import (
    EntitySyncManager,
    MemberRegistry,
    NotificationCenter,
    ProfileRegistry,
    ReorderCoordinator,
)
from subspace_sync.cache.notifications import Notifier
from subspace_sync.clients import RemoteClient, RemoteNameResolver, Signer
from subspace_sync.clients.names import NameResolver
from subspace_sync.config import cache
from subspace_sync.events import Unsubscribe
from subspace_sync.models import CommunityAggregate, Member, Notification, Profile
from subspace_sync.store import PersistentStore, open_store

logger = logging.getLogger(__name__)


class SyncCore:
    """Inbound calls exposed to the UI layer.

    Each instance owns its managers; nothing is shared through module state,
    so tests can build as many independent cores as they like.
    """

    def __init__(
        self,
        client: RemoteClient,
        store: PersistentStore,
        *,
        resolver: Optional[NameResolver] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.store = store
        self.aggregates = EntitySyncManager(client, store, clock=clock)
        self.members = MemberRegistry(client, store, clock=clock)
        self.profiles = ProfileRegistry(client, store, resolver=resolver, clock=clock)
        self.notifications = NotificationCenter(client, store, notifier=notifier, clock=clock)
        self.reorderer = ReorderCoordinator(self.aggregates, client)

    @classmethod
    def from_config(
        cls,
        *,
        signer: Optional[Signer] = None,
        notifier: Optional[Notifier] = None,
    ) -> "SyncCore":
        """Build a core from the environment-driven configuration."""

        client = RemoteClient(signer=signer)
        store = open_store(cache.STORE_BACKEND, cache.STORE_PATH)
        logger.info(
            "Sync core using %s store at %s, endpoints %s",
            cache.STORE_BACKEND,
            cache.STORE_PATH,
            ", ".join(client.endpoints),
        )
        return cls(client, store, resolver=RemoteNameResolver(client), notifier=notifier)

    # --- Aggregates --------------------------------------------------- #

    def get_aggregate(self, community_id: str) -> Optional[CommunityAggregate]:
        return self.aggregates.get_aggregate(community_id)

    async def refresh_aggregate(self, community_id: str, force: bool = False) -> None:
        await self.aggregates.refresh(community_id, force=force)

    def select_community(self, community_id: Optional[str]) -> Optional[CommunityAggregate]:
        return self.aggregates.select(community_id)

    # --- Members ------------------------------------------------------ #

    async def get_members(self, community_id: str) -> Optional[list[Member]]:
        return await self.members.get_members(community_id)

    async def refresh_members(self, community_id: str) -> list[Member]:
        return await self.members.refresh(community_id)

    # --- Profiles ----------------------------------------------------- #

    async def get_profile(self, user_id: str, force_refresh: bool = False) -> Profile:
        return await self.profiles.get_profile(user_id, force_refresh=force_refresh)

    async def get_bulk_profiles(self, user_ids: Iterable[str]) -> list[Profile]:
        return await self.profiles.get_bulk(user_ids)

    def queue_profile(self, user_id: str) -> None:
        self.profiles.queue(user_id)

    def subscribe_profiles(self, listener: Callable[[str], Any]) -> Unsubscribe:
        return self.profiles.subscribe(listener)

    # --- Notifications ------------------------------------------------ #

    def get_notifications(self, user_id: str) -> list[Notification]:
        return self.notifications.get_notifications(user_id)

    async def mark_notifications_read(
        self,
        community_id: str,
        channel_id: str | int,
        user_id: str,
        signer: Optional[Signer] = None,
    ) -> int:
        return await self.notifications.mark_read(community_id, channel_id, user_id, signer=signer)

    def start_polling(self, user_id: str) -> None:
        self.notifications.start_polling(user_id)

    def stop_polling(self, user_id: str) -> None:
        self.notifications.stop_polling(user_id)

    def subscribe_notifications(self, listener: Callable[[str], Any]) -> Unsubscribe:
        return self.notifications.subscribe(listener)

    # --- Reorder ------------------------------------------------------ #

    async def reorder(
        self,
        community_id: str,
        kind: str,
        moved_id: int,
        from_scope: Optional[int] = None,
        to_scope: Optional[int] = None,
        new_index: int = 0,
        signer: Optional[Signer] = None,
    ) -> CommunityAggregate:
        return await self.reorderer.reorder(
            community_id, kind, moved_id, from_scope, to_scope, new_index, signer=signer
        )

    async def close(self) -> None:
        """Stop background work, then release the client session and store."""

        await self.reorderer.close()
        await self.notifications.close()
        await self.profiles.close()
        await self.members.close()
        await self.aggregates.close()
        await self.client.close()
        self.store.close()
        logger.info("Sync core closed")
