from __future__ import annotations

import asyncio

import pytest

from dbkeeper.core.errors import ConcurrentDDLError, SnapshotError, TransientConnectionError
from dbkeeper.services.resilience import RetryPolicy, backoff_seconds, retry_async, snapshot_retryable


class _StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"status {status_code}")
        self.status_code = status_code


def _flaky(errors: list[Exception]):
    calls = {"count": 0}

    async def _call() -> str:
        calls["count"] += 1
        if errors:
            raise errors.pop(0)
        return "ok"

    return _call, calls


def test_backoff_doubles_per_attempt() -> None:
    policy = RetryPolicy(timeout_ms=None, max_attempts=5, backoff_ms=100)
    assert [backoff_seconds(policy, attempt, jitter=1.0) for attempt in (1, 2, 3)] == [0.1, 0.2, 0.4]
    assert 0.05 <= backoff_seconds(policy, 1) < 0.15


@pytest.mark.asyncio
async def test_snapshot_errors_retry_only_when_transient() -> None:
    policy = RetryPolicy(timeout_ms=None, max_attempts=3, backoff_ms=1)
    retries: list[int] = []
    call, calls = _flaky([TransientConnectionError("gone away"), ConcurrentDDLError("ddl")])
    result = await retry_async(
        call,
        policy=policy,
        retryable=snapshot_retryable,
        on_retry=lambda attempt, exc, sleep_s: retries.append(attempt),
    )
    assert result == "ok"
    assert calls["count"] == 3
    assert retries == [1, 2]

    call, calls = _flaky([SnapshotError("unknown database")])
    with pytest.raises(SnapshotError):
        await retry_async(call, policy=policy, retryable=snapshot_retryable)
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_attempts_are_bounded() -> None:
    policy = RetryPolicy(timeout_ms=None, max_attempts=2, backoff_ms=1)
    call, calls = _flaky([TransientConnectionError("a"), TransientConnectionError("b"), TransientConnectionError("c")])
    with pytest.raises(TransientConnectionError, match="b"):
        await retry_async(call, policy=policy, retryable=snapshot_retryable)
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_default_policy_retries_server_errors_and_timeouts() -> None:
    policy = RetryPolicy(timeout_ms=None, max_attempts=3, backoff_ms=1)
    call, calls = _flaky([ConnectionError("reset"), _StatusError(503)])
    assert await retry_async(call, policy=policy) == "ok"
    assert calls["count"] == 3

    call, calls = _flaky([_StatusError(400)])
    with pytest.raises(_StatusError):
        await retry_async(call, policy=policy)
    assert calls["count"] == 1

    async def _slow() -> None:
        await asyncio.sleep(5)

    with pytest.raises(TimeoutError):
        await retry_async(_slow, policy=RetryPolicy(timeout_ms=10, max_attempts=1, backoff_ms=1))
