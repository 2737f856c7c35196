import asyncio

from subspace_sync.cache.notifications import (
    EMPTY_FEED,
    NotificationCenter,
    format_mentions,
)
from subspace_sync.errors import TransientRemoteError
from subspace_sync.store import MemoryStore

FEED = "profiles/get-notifications"


def _wire(message_id, *, server="S1", channel=7, timestamp=1000, content="hi"):
    return {
        "message_id": message_id,
        "user_id": "u1",
        "server_id": server,
        "channel_id": channel,
        "author_id": "a1",
        "author_name": "Alice",
        "content": content,
        "channel_name": "general",
        "server_name": "Test Community",
        "timestamp": timestamp,
    }


def _feed(*notes):
    return {"notifications": list(notes)}


def _center(remote, store, clock, **kwargs):
    sent = kwargs.pop("sent", None)
    kwargs.setdefault("ttl", 10.0)
    kwargs.setdefault("poll_interval", 4.0)
    if sent is not None:
        kwargs["notifier"] = lambda title, payload: sent.append((title, dict(payload)))
    return NotificationCenter(remote, store, clock=clock, profiles_id="profiles", **kwargs)


def test_repeated_ids_are_stored_once(remote, store, clock):
    remote.respond(
        FEED,
        _feed(_wire("n1", timestamp=1), _wire("n2", timestamp=2)),
        _feed(_wire("n1", timestamp=1), _wire("n2", timestamp=2), _wire("n3", timestamp=3)),
    )
    center = _center(remote, store, clock)

    first = asyncio.run(center.poll("u1"))
    assert [n.id for n in first] == ["n1", "n2"]
    assert center.get_unread_count("u1") == 2

    clock.advance(11)
    second = asyncio.run(center.poll("u1"))

    assert [n.id for n in second] == ["n3"]
    assert [n.id for n in center.get_notifications("u1")] == ["n3", "n2", "n1"]
    assert center.get_unread_count("u1") == 3


def test_seen_ledger_survives_restart_and_pruning(remote, store, clock):
    remote.respond(FEED, _feed(_wire("n1")))
    center = _center(remote, store, clock)
    asyncio.run(center.poll("u1"))
    center.clear("u1")

    restarted = _center(remote, store, clock)
    clock.advance(11)

    assert asyncio.run(restarted.poll("u1")) == []
    assert restarted.get_notifications("u1") == []


def test_seen_ledger_is_bounded(remote, clock):
    store = MemoryStore()
    remote.respond(FEED, _feed(*[_wire(f"n{i}", timestamp=i) for i in range(6)]))
    center = _center(remote, store, clock, seen_limit=4)

    asyncio.run(center.poll("u1"))

    assert store.get_json("notifications:seen-ids")["data"] == ["n2", "n3", "n4", "n5"]


def test_list_is_sorted_and_capped(remote, store, clock):
    remote.respond(FEED, _feed(*[_wire(f"n{i}", timestamp=i) for i in range(5)]))
    center = _center(remote, store, clock, max_stored=3)

    asyncio.run(center.poll("u1"))

    assert [n.id for n in center.get_notifications("u1")] == ["n4", "n3", "n2"]
    persisted = store.get_json("notifications:u1")
    assert persisted["scopeId"] == "u1"
    assert len(persisted["data"]) == 3


def test_fetch_is_throttled_and_cached(remote, store, clock):
    remote.respond(FEED, _feed(_wire("n1")))
    center = _center(remote, store, clock, ttl=1.0)

    async def run():
        first = await center.fetch("u1")
        clock.advance(2)
        throttled = await center.fetch("u1")
        return first, throttled

    first, throttled = asyncio.run(run())

    assert throttled is first
    assert remote.count(FEED) == 1


def test_throttled_fetch_without_cache_returns_empty_marker(remote, store, clock):
    remote.respond(FEED, TransientRemoteError("timed out"))
    center = _center(remote, store, clock)

    assert asyncio.run(center.poll("u1")) == []
    clock.advance(1)
    assert asyncio.run(center.fetch("u1")) is EMPTY_FEED
    assert EMPTY_FEED.is_empty
    assert remote.count(FEED) == 1


def test_concurrent_fetches_share_one_call(remote, store, clock):
    remote.respond(FEED, _feed(_wire("n1")))
    center = _center(remote, store, clock)

    async def run():
        remote.gate = asyncio.Event()
        tasks = [asyncio.create_task(center.fetch("u1")) for _ in range(3)]
        await asyncio.sleep(0)
        remote.gate.set()
        return await asyncio.gather(*tasks)

    snapshots = asyncio.run(run())
    assert remote.count(FEED) == 1
    assert snapshots[0] is snapshots[1] is snapshots[2]


def test_mark_read_flips_matching_records(remote, store, clock):
    remote.respond(
        FEED,
        _feed(_wire("n1", channel=7), _wire("n2", channel=7), _wire("n3", channel=8)),
    )
    remote.respond("profiles/mark-read", {"success": True})
    center = _center(remote, store, clock)
    changes = []
    center.subscribe(changes.append)
    asyncio.run(center.poll("u1"))

    flipped = asyncio.run(center.mark_read("S1", 7, "u1", signer="wallet"))

    assert flipped == 2
    assert center.get_unread_count("u1") == 1
    assert center.get_unread_count("u1", "S1", 8) == 1
    assert not center.has_unread("u1", "S1", "7")
    assert changes == ["u1", "u1"]
    write = remote.calls[-1]
    assert write.method == "POST"
    assert write.body == {"server_id": "S1", "channel_id": 7}


def test_many_arrivals_for_one_community_are_grouped(remote, store, clock):
    sent = []
    notes = [_wire(f"n{i}", timestamp=i) for i in range(4)]
    notes.append(_wire("x1", server="S2", content="hey @[Bob](addr-1)"))
    remote.respond(FEED, _feed(*notes))
    center = _center(remote, store, clock, sent=sent)

    asyncio.run(center.poll("u1"))

    titles = [title for title, _ in sent]
    assert titles.count("4 new messages") == 1
    single = next(payload for title, payload in sent if title == "Alice")
    assert single["content"] == "hey @Bob"
    assert center.unread_by_community("u1") == {"S1": 4, "S2": 1}


def test_disabled_user_is_not_polled(remote, clock):
    store = MemoryStore()
    remote.respond(FEED, _feed(_wire("n1")))
    center = _center(remote, store, clock)
    center.set_enabled("u1", False)

    assert asyncio.run(center.poll("u1")) == []
    assert remote.calls == []
    assert not _center(remote, store, clock).is_enabled("u1")


def test_polling_loop_collects_notifications(remote, store, clock):
    remote.respond(FEED, _feed(_wire("n1")))
    center = _center(remote, store, clock)

    async def run():
        center.start_polling("u1", interval=0.01)
        assert center.is_polling("u1")
        await asyncio.sleep(0.05)
        center.stop_polling("u1")
        await center.close()

    asyncio.run(run())

    assert [n.id for n in center.get_notifications("u1")] == ["n1"]
    assert not center.is_polling("u1")


def test_get_notifications_is_synchronous_and_triggers_poll(remote, store, clock):
    remote.respond(FEED, _feed(_wire("n1")))
    center = _center(remote, store, clock)

    async def run():
        assert center.get_notifications("u1") == []
        for _ in range(10):
            await asyncio.sleep(0)
        return center.get_notifications("u1")

    assert [n.id for n in asyncio.run(run())] == ["n1"]


def test_format_mentions():
    assert format_mentions("hi @[Bob](addr) and @[Eve](x)") == "hi @Bob and @Eve"
    assert format_mentions("") == ""


def test_feed_ttl_boundaries(remote, store, clock):
    remote.respond(FEED, _feed(_wire("n1")))
    center = _center(remote, store, clock, ttl=10.0, poll_interval=4.0)

    async def run():
        first = await center.fetch("u1")
        clock.advance(10)
        assert await center.fetch("u1") is first
        assert remote.count(FEED) == 1

        clock.advance(1)
        await center.fetch("u1")
        assert remote.count(FEED) == 2

    asyncio.run(run())
