"""
Caching managers for remote chat state.

Modules
=======

``entry``
    Defines :class:`~subspace_sync.cache.entry.CacheEntry`, the timestamped
    value every cache stores and its persisted ``{data, timestamp}`` envelope.
``aggregates``
    Provides :class:`~subspace_sync.cache.aggregates.EntitySyncManager`, which
    owns community aggregates: TTL reads, coalesced refreshes, quarantine of
    invalid ids and the authoritative/display split used by optimistic moves.
``members``
    Provides :class:`~subspace_sync.cache.members.MemberRegistry`, the
    rate-limited member list cache.
``profiles``
    Provides :class:`~subspace_sync.cache.profiles.ProfileRegistry` with
    throttled single fetches, micro-batched bulk fetches and background name
    enrichment.
``notifications``
    Provides :class:`~subspace_sync.cache.notifications.NotificationCenter`,
    which polls the notification feed and deduplicates against the seen-id
    ledger.
``ordering``
    Pure order-id arithmetic for categories and channels.
``reorder``
    Provides :class:`~subspace_sync.cache.reorder.ReorderCoordinator` for
    optimistic drag-to-reorder with rollback.
"""

from .aggregates import EntitySyncManager
from .entry import CacheEntry
from .members import MemberRegistry
from .notifications import EMPTY_FEED, FeedSnapshot, NotificationCenter
from .profiles import ProfileRegistry
from .reorder import ReorderCoordinator

__all__ = [
    "CacheEntry",
    "EMPTY_FEED",
    "EntitySyncManager",
    "FeedSnapshot",
    "MemberRegistry",
    "NotificationCenter",
    "ProfileRegistry",
    "ReorderCoordinator",
]
