import asyncio

import pytest

from subspace_sync.cache.members import MemberRegistry
from subspace_sync.errors import FatalRemoteError, RateLimitedError, TransientRemoteError
from subspace_sync.models import Member

MEMBERS = {"members": [{"id": "u1", "nickname": "one"}, {"id": "u2", "nickname": None}]}


def _registry(remote, store, clock, **kwargs):
    kwargs.setdefault("ttl", 600.0)
    kwargs.setdefault("min_interval", 60.0)
    kwargs.setdefault("max_attempts", 3)
    return MemberRegistry(remote, store, clock=clock, **kwargs)


def test_concurrent_get_members_share_one_call(remote, store, clock):
    remote.respond("S1/get-members", MEMBERS)
    registry = _registry(remote, store, clock)

    async def run():
        remote.gate = asyncio.Event()
        callers = [asyncio.create_task(registry.get_members("S1")) for _ in range(5)]
        await asyncio.sleep(0)
        remote.gate.set()
        return await asyncio.gather(*callers)

    results = asyncio.run(run())

    assert remote.count("S1/get-members") == 1
    assert all(r == results[0] for r in results)
    assert results[0] == [Member("u1", "one"), Member("u2", None)]


def test_fourth_attempt_is_rate_limited(remote, store, clock):
    remote.respond("S1/get-members", MEMBERS)
    registry = _registry(remote, store, clock)

    async def run():
        for _ in range(3):
            await registry.refresh("S1")
            clock.advance(61)
        with pytest.raises(RateLimitedError) as info:
            await registry.refresh("S1")
        return info.value

    error = asyncio.run(run())

    assert remote.count("S1/get-members") == 3
    assert error.scope_id == "S1"
    assert error.retry_after is None


def test_min_interval_blocks_quick_retries(remote, store, clock):
    remote.respond("S1/get-members", MEMBERS)
    registry = _registry(remote, store, clock)
    asyncio.run(registry.refresh("S1"))

    clock.advance(30)
    with pytest.raises(RateLimitedError) as info:
        asyncio.run(registry.refresh("S1"))

    assert info.value.retry_after == pytest.approx(30)
    assert remote.count("S1/get-members") == 1


def test_get_members_falls_back_when_limited(remote, store, clock):
    remote.respond("S1/get-members", MEMBERS)
    registry = _registry(remote, store, clock, ttl=10.0)
    asyncio.run(registry.refresh("S1"))

    clock.advance(20)
    members = asyncio.run(registry.get_members("S1"))

    assert [m.id for m in members] == ["u1", "u2"]
    assert remote.count("S1/get-members") == 1


def test_fresh_cache_skips_network(remote, store, clock):
    remote.respond("S1/get-members", MEMBERS)
    registry = _registry(remote, store, clock)
    asyncio.run(registry.refresh("S1"))

    clock.advance(599)
    asyncio.run(registry.get_members("S1"))

    assert remote.count("S1/get-members") == 1


def test_transient_failure_returns_none_without_cache(remote, store, clock):
    remote.respond("S1/get-members", TransientRemoteError("timed out"))
    registry = _registry(remote, store, clock)

    assert asyncio.run(registry.get_members("S1")) is None


def test_not_found_blocks_future_requests(remote, store, clock):
    remote.respond("S1/get-members", FatalRemoteError("Server not found", status=404))
    registry = _registry(remote, store, clock)

    with pytest.raises(FatalRemoteError):
        asyncio.run(registry.refresh("S1"))

    clock.advance(3600)
    with pytest.raises(RateLimitedError):
        asyncio.run(registry.refresh("S1"))
    assert remote.count("S1/get-members") == 1


def test_patch_nickname_keeps_timestamp(remote, store, clock):
    remote.respond("S1/get-members", MEMBERS)
    registry = _registry(remote, store, clock)
    asyncio.run(registry.refresh("S1"))
    stamped = store.get_json("members:S1")["timestamp"]

    clock.advance(100)
    assert registry.patch_nickname("S1", "u2", "two")

    assert registry.cached_members("S1")[1] == Member("u2", "two")
    record = store.get_json("members:S1")
    assert record["timestamp"] == stamped
    assert record["scopeId"] == "S1"
    assert not registry.patch_nickname("S1", "missing", "x")
    assert not registry.patch_nickname("S9", "u1", "x")


def test_update_nickname_writes_then_patches(remote, store, clock):
    remote.respond("S1/get-members", MEMBERS)
    remote.respond("S1/update-nickname", {"success": True})
    registry = _registry(remote, store, clock)
    asyncio.run(registry.refresh("S1"))

    asyncio.run(registry.update_nickname("S1", "u1", "uno", signer="wallet"))

    write = remote.calls[-1]
    assert write.method == "POST"
    assert write.needs_signer
    assert write.body == {"nickname": "uno"}
    assert registry.cached_members("S1")[0].nickname == "uno"


def test_get_member_returns_none_on_failure(remote, store, clock):
    remote.respond("S1/single-member", {"id": "u1", "nickname": "one"})
    registry = _registry(remote, store, clock)

    assert asyncio.run(registry.get_member("S1", "u1")) == Member("u1", "one")
    assert asyncio.run(registry.get_member("S2", "u1")) is None


def test_members_survive_restart(remote, store, clock):
    remote.respond("S1/get-members", MEMBERS)
    asyncio.run(_registry(remote, store, clock).refresh("S1"))

    reloaded = _registry(remote, store, clock)

    assert [m.id for m in reloaded.cached_members("S1")] == ["u1", "u2"]
    assert reloaded.is_fresh("S1")


def test_ttl_boundaries(remote, store, clock):
    remote.respond("S1/get-members", MEMBERS)
    registry = _registry(remote, store, clock)
    asyncio.run(registry.refresh("S1"))

    clock.advance(600)
    assert registry.is_fresh("S1")
    asyncio.run(registry.get_members("S1"))
    assert remote.count("S1/get-members") == 1

    clock.advance(1)
    assert not registry.is_fresh("S1")
    asyncio.run(registry.get_members("S1"))
    assert remote.count("S1/get-members") == 2
