"""
Optimistic drag-to-reorder for channels and categories.

``reorder`` applies the move to the display state at once, writes the moved
item's new parent and position remotely, and then lets an authoritative
refresh settle the result. Refreshes after same-scope moves are debounced so
a burst of drags costs one fetch; a move across scopes refreshes right away.
A failed write restores the affected scopes from the last authoritative
aggregate and raises :class:`~subspace_sync.errors.ReorderError`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Literal, Optional

from subspace_sync.clients.remote import RemoteClient, Signer
from subspace_sync.config import reorder as reorder_config
from subspace_sync.errors import RemoteError, ReorderError
from subspace_sync.models import CommunityAggregate

from . import ordering
from .aggregates import EntitySyncManager

logger = logging.getLogger(__name__)

Kind = Literal["channel", "category"]


class ReorderCoordinator:
    def __init__(
        self,
        sync: EntitySyncManager,
        client: RemoteClient,
        *,
        debounce: Optional[float] = None,
    ) -> None:
        self._sync = sync
        self._client = client
        self._debounce = reorder_config.DEBOUNCE if debounce is None else debounce
        self._refreshes: dict[str, asyncio.Task[None]] = {}

    async def reorder(
        self,
        community_id: str,
        kind: Kind,
        moved_id: int,
        from_scope: Optional[int] = None,
        to_scope: Optional[int] = None,
        new_index: int = 0,
        signer: Optional[Signer] = None,
    ) -> CommunityAggregate:
        """Move a channel or category and return the optimistic aggregate.

        For channels the scopes are category ids (``None`` for uncategorized);
        categories ignore them. ``new_index`` is the zero-based position in
        the destination scope.
        """

        current = self._sync.cached(community_id)
        if current is None:
            raise ReorderError(
                f"Community {community_id} is not loaded",
                community_id=community_id,
                moved_id=moved_id,
            )

        if kind == "channel":
            patched = ordering.move_channel(current, moved_id, from_scope, to_scope, new_index)
            moved = next(c for c in patched.channels if c.id == moved_id)
            path = f"{community_id}/update-channel"
            body = {
                "id": moved.id,
                "category_id": "" if moved.category_id is None else moved.category_id,
                "order_id": moved.order_id,
            }
            scopes = {from_scope, to_scope}
            cross_scope = from_scope != to_scope
        elif kind == "category":
            patched = ordering.move_category(current, moved_id, new_index)
            moved_category = next(c for c in patched.categories if c.id == moved_id)
            path = f"{community_id}/update-category"
            body = {
                "id": moved_category.id,
                "name": moved_category.name,
                "order_id": moved_category.order_id,
            }
            scopes = set()
            cross_scope = False
        else:
            raise ValueError(f"Unknown reorder kind: {kind!r}")

        self._sync.apply_local(community_id, patched)
        logger.info("Moved %s %s in %s to index %s", kind, moved_id, community_id, new_index)

        try:
            await self._client.call(path, method="POST", body=body, needs_signer=True, signer=signer)
        except RemoteError as exc:
            logger.error("Failed to move %s %s in %s: %s", kind, moved_id, community_id, exc)
            self._rollback(community_id, kind, scopes)
            raise ReorderError(
                f"Failed to move {kind} {moved_id}: {exc}",
                community_id=community_id,
                moved_id=moved_id,
            ) from exc

        self._schedule_refresh(community_id, immediate=cross_scope)
        return patched

    def _rollback(self, community_id: str, kind: Kind, scopes: set[Optional[int]]) -> None:
        current = self._sync.cached(community_id)
        authoritative = self._sync.authoritative(community_id)
        if current is None or authoritative is None:
            logger.warning("Nothing to roll back for community %s", community_id)
            return
        self._sync.apply_local(
            community_id, ordering.restore_scopes(current, authoritative, kind, scopes)
        )

    # ------------------------------------------------------------------ #
    # Reconciliation
    # ------------------------------------------------------------------ #

    def _schedule_refresh(self, community_id: str, immediate: bool) -> None:
        previous = self._refreshes.pop(community_id, None)
        if previous is not None:
            previous.cancel()
        delay = 0.0 if immediate else self._debounce
        self._refreshes[community_id] = asyncio.create_task(
            self._refresh_after(community_id, delay), name=f"reorder-refresh:{community_id}"
        )

    async def _refresh_after(self, community_id: str, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        if self._refreshes.get(community_id) is asyncio.current_task():
            del self._refreshes[community_id]
        try:
            await self._sync.refresh(community_id)
        except RemoteError as exc:
            logger.warning("Refresh after reorder of %s failed: %s", community_id, exc)

    def has_scheduled_refresh(self, community_id: str) -> bool:
        return community_id in self._refreshes

    async def settle(self) -> None:
        """Wait for every scheduled reconciliation refresh."""

        while self._refreshes:
            await asyncio.gather(*list(self._refreshes.values()), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._refreshes.values())
        self._refreshes.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
