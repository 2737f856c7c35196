import asyncio

import pytest

from subspace_sync.clients.retry import RetryPolicy, exponential_backoff
from subspace_sync.errors import (
    FatalRemoteError,
    RemoteError,
    RetryExhaustedError,
    TransientRemoteError,
)


def _policy(**kwargs):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    kwargs.setdefault("sleep", fake_sleep)
    return RetryPolicy(**kwargs), sleeps


def _flaky(*outcomes):
    calls = []
    remaining = list(outcomes)

    async def fn():
        calls.append(1)
        outcome = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    return fn, calls


def test_exponential_backoff():
    delay = exponential_backoff(1.0, 1.5)

    assert delay(1) == 1.0
    assert delay(2) == 1.5
    assert delay(3) == pytest.approx(2.25)


def test_returns_first_success():
    policy, sleeps = _policy()
    fn, calls = _flaky("ok")

    assert asyncio.run(policy.run(fn)) == "ok"
    assert len(calls) == 1
    assert sleeps == []


def test_fatal_errors_are_not_retried():
    policy, sleeps = _policy()
    fn, calls = _flaky(FatalRemoteError("Server not found", status=404))

    with pytest.raises(FatalRemoteError):
        asyncio.run(policy.run(fn))
    assert len(calls) == 1
    assert sleeps == []


def test_message_pattern_marks_plain_errors_fatal():
    policy, _ = _policy()
    fn, calls = _flaky(RemoteError("Channel does not exist"))

    with pytest.raises(RemoteError):
        asyncio.run(policy.run(fn))
    assert len(calls) == 1


def test_exhaustion_raises_after_max_attempts():
    policy, sleeps = _policy(max_attempts=5, backoff=exponential_backoff(1.0, 1.5))
    fn, calls = _flaky(RemoteError("Server returned status 400: bad"))

    with pytest.raises(RetryExhaustedError) as info:
        asyncio.run(policy.run(fn, label="S1/"))

    assert len(calls) == 5
    assert info.value.attempts == 5
    assert sleeps == pytest.approx([1.0, 1.5, 2.25, 3.375])
    assert isinstance(info.value.__cause__, RemoteError)


def test_failover_happens_once_without_charging_an_attempt():
    switches = []
    policy, sleeps = _policy(max_attempts=3)
    fn, calls = _flaky(
        TransientRemoteError("timed out"),
        TransientRemoteError("connection reset"),
        "ok",
    )

    result = asyncio.run(policy.run(fn, on_switch=lambda: switches.append(1)))

    assert result == "ok"
    assert len(switches) == 1
    assert len(calls) == 3
    # switch was free, the second network error cost one backoff
    assert sleeps == [1.0]


def test_non_remote_errors_propagate_untouched():
    policy, _ = _policy()
    fn, calls = _flaky(KeyError("bug"))

    with pytest.raises(KeyError):
        asyncio.run(policy.run(fn))
    assert len(calls) == 1


def test_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
