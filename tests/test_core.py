import asyncio

from subspace_sync import SyncCore
from subspace_sync.clients import RemoteClient
from subspace_sync.config import remote as remote_cfg
from subspace_sync.store import MemoryStore

PROFILES = remote_cfg.PROFILES_ID


def test_facade_routes_to_managers(remote, store, clock, community_payload):
    remote.respond("S1/", community_payload)
    remote.respond("S1/get-members", {"members": [{"id": "u1", "nickname": "one"}]})
    remote.respond(f"{PROFILES}/profile", {"profile": {"username": "alice"}})
    remote.respond(f"{PROFILES}/get-notifications", {"notifications": []})
    remote.respond("S1/update-channel", {"success": True})
    core = SyncCore(remote, store, clock=clock)
    profile_changes = []
    core.subscribe_profiles(profile_changes.append)

    async def run():
        await core.refresh_aggregate("S1")
        assert core.select_community("S1").name == "Test Community"
        assert core.get_aggregate("S1") is core.aggregates.current

        members = await core.get_members("S1")
        assert [m.id for m in members] == ["u1"]

        profile = await core.get_profile("u1")
        assert profile.username == "alice"

        assert core.get_notifications("u1") == []
        moved = await core.reorder("S1", "channel", 12, 1, 1, 0)
        assert moved.channels[2].order_id == 1

        await core.close()

    asyncio.run(run())
    assert profile_changes == ["u1"]


def test_from_config_uses_environment():
    core = SyncCore.from_config()

    assert isinstance(core.store, MemoryStore)
    assert isinstance(core.client, RemoteClient)
    assert core.client.endpoints == list(remote_cfg.ENDPOINTS)

    asyncio.run(core.close())
