import asyncio
import copy
import os, sys
from pathlib import Path
from types import SimpleNamespace

import pytest

# Add project root to sys.path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

# Keep tests off the network and off the disk
os.environ.setdefault("SUBSPACE_STORE_BACKEND", "memory")
os.environ.setdefault("SUBSPACE_CU_ENDPOINTS", "https://cu-a.test,https://cu-b.test")
os.environ.setdefault("SUBSPACE_PROFILES_ID", "profiles-process")

from subspace_sync.errors import FatalRemoteError  # noqa: E402
from subspace_sync.store import MemoryStore  # noqa: E402


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRemote:
    """In-process stand-in for :class:`RemoteClient`.

    ``respond(path, *results)`` queues results for ``path``; the last one is
    reused once the queue is down to it. A result may be a payload, an
    exception instance (raised) or a callable taking the request body.
    Set ``gate`` to an ``asyncio.Event`` to hold every call until it is set.
    """

    def __init__(self) -> None:
        self.calls = []
        self.responses = {}
        self.gate = None

    def respond(self, path, *results):
        self.responses[path] = list(results)

    async def call(self, path, *, method="GET", body=None, needs_signer=False, signer=None):
        self.calls.append(
            SimpleNamespace(
                path=path, method=method, body=body, needs_signer=needs_signer, signer=signer
            )
        )
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)

        results = self.responses.get(path)
        if not results:
            raise FatalRemoteError(f"No response configured for {path}", status=404, path=path)
        result = results.pop(0) if len(results) > 1 else results[0]
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            return result(body)
        return copy.deepcopy(result)

    def count(self, path):
        return sum(1 for c in self.calls if c.path == path)

    async def close(self):
        pass


def aggregate_payload(**overrides):
    payload = {
        "name": "Test Community",
        "icon": "icon-tx",
        "owner": "owner-1",
        "member_count": 3,
        "categories": [
            {"id": 1, "name": "Text", "order_id": 1},
            {"id": 2, "name": "Voice", "order_id": 2},
        ],
        "channels": [
            {"id": 10, "name": "A", "order_id": 1, "category_id": 1},
            {"id": 11, "name": "B", "order_id": 2, "category_id": 1},
            {"id": 12, "name": "C", "order_id": 3, "category_id": 1},
            {"id": 20, "name": "lobby", "order_id": 1, "category_id": 2},
            {"id": 30, "name": "loose", "order_id": 1, "category_id": None},
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def community_payload():
    return aggregate_payload()
