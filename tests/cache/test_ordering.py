import pytest

from subspace_sync.cache import ordering
from subspace_sync.models import CommunityAggregate


def _names(aggregate, scope):
    return [(c.name, c.order_id) for c in ordering.channels_in_scope(aggregate, scope)]


def test_move_within_scope_renumbers(community_payload):
    aggregate = CommunityAggregate.from_dict("S1", community_payload)

    moved = ordering.move_channel(aggregate, 12, 1, 1, 0)

    assert _names(moved, 1) == [("C", 1), ("A", 2), ("B", 3)]
    assert ordering.is_contiguous(ordering.channels_in_scope(moved, 1))
    # untouched scopes keep their objects
    assert _names(moved, 2) == [("lobby", 1)]
    assert aggregate.channels[2].order_id == 3


def test_move_across_scopes_renumbers_both(community_payload):
    aggregate = CommunityAggregate.from_dict("S1", community_payload)

    moved = ordering.move_channel(aggregate, 11, 1, 2, 5)

    assert _names(moved, 1) == [("A", 1), ("C", 2)]
    assert _names(moved, 2) == [("lobby", 1), ("B", 2)]
    b = next(c for c in moved.channels if c.id == 11)
    assert b.category_id == 2


def test_move_into_uncategorized(community_payload):
    aggregate = CommunityAggregate.from_dict("S1", community_payload)

    moved = ordering.move_channel(aggregate, 10, 1, None, 0)

    assert _names(moved, None) == [("A", 1), ("loose", 2)]
    assert next(c for c in moved.channels if c.id == 10).category_id is None


def test_dangling_category_is_displayed_uncategorized(community_payload):
    community_payload["channels"].append(
        {"id": 40, "name": "orphan", "order_id": 2, "category_id": "99"}
    )
    aggregate = CommunityAggregate.from_dict("S1", community_payload)

    assert _names(aggregate, None) == [("loose", 1), ("orphan", 2)]

    moved = ordering.move_channel(aggregate, 30, None, None, 1)
    orphan = next(c for c in moved.channels if c.id == 40)
    assert orphan.category_id == 99
    assert orphan.order_id == 1


def test_move_channel_validates_scopes(community_payload):
    aggregate = CommunityAggregate.from_dict("S1", community_payload)

    with pytest.raises(ValueError):
        ordering.move_channel(aggregate, 10, 2, 1, 0)
    with pytest.raises(ValueError):
        ordering.move_channel(aggregate, 10, 1, 42, 0)
    with pytest.raises(KeyError):
        ordering.move_channel(aggregate, 999, 1, 1, 0)


def test_move_category(community_payload):
    aggregate = CommunityAggregate.from_dict("S1", community_payload)

    moved = ordering.move_category(aggregate, 2, 0)

    assert [(c.name, c.order_id) for c in ordering.sorted_categories(moved)] == [
        ("Voice", 1),
        ("Text", 2),
    ]


def test_restore_scopes_only_touches_named_scopes(community_payload):
    authoritative = CommunityAggregate.from_dict("S1", community_payload)
    first = ordering.move_channel(authoritative, 12, 1, 1, 0)
    second = ordering.move_category(first, 2, 0)

    restored = ordering.restore_scopes(second, authoritative, "channel", {1})

    assert _names(restored, 1) == [("A", 1), ("B", 2), ("C", 3)]
    # the category move outside the restored scope survives
    assert ordering.sorted_categories(restored)[0].name == "Voice"

    categories = ordering.restore_scopes(second, authoritative, "category")
    assert ordering.sorted_categories(categories)[0].name == "Text"
