"""
Order-id arithmetic for categories and channels.

A *scope* is the set of siblings an item is ordered within: the categories of
a community, the channels of one category, or the uncategorized channels
(scope ``None``). A channel whose ``category_id`` names no existing category
is displayed in the uncategorized scope but keeps its stored ``category_id``.

After any move the affected scope(s) are renumbered to a contiguous ``1..N``.
All functions here are pure: they return new aggregates.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Optional, Sequence, TypeVar

from subspace_sync.models import Category, Channel, CommunityAggregate

Scope = Optional[int]
Item = TypeVar("Item", Category, Channel)


def display_scope(channel: Channel, category_ids: set[int]) -> Scope:
    """Return the scope ``channel`` is displayed in."""

    if channel.category_id is not None and channel.category_id in category_ids:
        return channel.category_id
    return None


def sorted_categories(aggregate: CommunityAggregate) -> list[Category]:
    return sorted(aggregate.categories, key=lambda c: (c.order_id, c.id))


def channels_in_scope(aggregate: CommunityAggregate, scope: Scope) -> list[Channel]:
    """Channels displayed in ``scope``, ordered by ``order_id``."""

    category_ids = aggregate.category_ids()
    members = [c for c in aggregate.channels if display_scope(c, category_ids) == scope]
    return sorted(members, key=lambda c: (c.order_id, c.id))


def renumber(items: Sequence[Item]) -> list[Item]:
    """Assign ``order_id`` 1..N in sequence order."""

    return [
        item if item.order_id == position else replace(item, order_id=position)
        for position, item in enumerate(items, start=1)
    ]


def is_contiguous(items: Iterable[Category | Channel]) -> bool:
    orders = sorted(item.order_id for item in items)
    return orders == list(range(1, len(orders) + 1))


def move_channel(
    aggregate: CommunityAggregate,
    channel_id: int,
    from_scope: Scope,
    to_scope: Scope,
    new_index: int,
) -> CommunityAggregate:
    """Move ``channel_id`` to position ``new_index`` of ``to_scope``."""

    category_ids = aggregate.category_ids()
    if to_scope is not None and to_scope not in category_ids:
        raise ValueError(f"Unknown target category {to_scope}")

    moving = next((c for c in aggregate.channels if c.id == channel_id), None)
    if moving is None:
        raise KeyError(f"Channel {channel_id} is not in community {aggregate.id}")
    actual_scope = display_scope(moving, category_ids)
    if actual_scope != from_scope:
        raise ValueError(
            f"Channel {channel_id} is displayed in scope {actual_scope}, not {from_scope}"
        )

    source = [c for c in channels_in_scope(aggregate, from_scope) if c.id != channel_id]
    cross_scope = from_scope != to_scope
    if cross_scope:
        target = [c for c in channels_in_scope(aggregate, to_scope) if c.id != channel_id]
        moving = replace(moving, category_id=to_scope)
    else:
        target = source

    index = max(0, min(new_index, len(target)))
    target.insert(index, moving)

    updated = {c.id: c for c in renumber(target)}
    if cross_scope:
        updated.update({c.id: c for c in renumber(source)})
    return aggregate.with_items(channels=(updated.get(c.id, c) for c in aggregate.channels))


def move_category(
    aggregate: CommunityAggregate, category_id: int, new_index: int
) -> CommunityAggregate:
    """Move ``category_id`` to position ``new_index`` among the categories."""

    ordered = sorted_categories(aggregate)
    moving = next((c for c in ordered if c.id == category_id), None)
    if moving is None:
        raise KeyError(f"Category {category_id} is not in community {aggregate.id}")
    ordered.remove(moving)
    ordered.insert(max(0, min(new_index, len(ordered))), moving)

    updated = {c.id: c for c in renumber(ordered)}
    return aggregate.with_items(
        categories=(updated.get(c.id, c) for c in aggregate.categories)
    )


def restore_scopes(
    current: CommunityAggregate,
    authoritative: CommunityAggregate,
    kind: str,
    scopes: Iterable[Scope] = (),
) -> CommunityAggregate:
    """Return ``current`` with the given scopes reset to ``authoritative``.

    Items outside the scopes keep their current (possibly still optimistic)
    values, so concurrent moves in unrelated scopes survive a rollback.
    """

    if kind == "category":
        return current.with_items(categories=authoritative.categories)

    scopes = set(scopes)
    current_ids = current.category_ids()
    known_ids = authoritative.category_ids()
    affected = {
        c.id for c in current.channels if display_scope(c, current_ids) in scopes
    } | {
        c.id for c in authoritative.channels if display_scope(c, known_ids) in scopes
    }
    baseline = {c.id: c for c in authoritative.channels}
    return current.with_items(
        channels=(
            baseline.get(c.id, c) if c.id in affected else c for c in current.channels
        )
    )
