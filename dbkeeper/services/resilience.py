from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import ConcurrentDDLError, TransientConnectionError


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, ConnectionError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


def snapshot_retryable(exc: Exception) -> bool:
    # Connection drops and DDL-invalidated snapshots are worth another attempt; everything else aborts.
    return isinstance(exc, (TransientConnectionError, ConcurrentDDLError))


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize retry behavior so callers only pick a policy.
    timeout_ms: int | None
    max_attempts: int
    backoff_ms: int


def snapshot_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.snapshot_timeout_s * 1000,
        max_attempts=settings.snapshot_retry_max_attempts,
        backoff_ms=settings.snapshot_retry_backoff_ms,
    )


def alert_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.alert_webhook_timeout_ms,
        max_attempts=settings.alert_webhook_max_attempts,
        backoff_ms=settings.alert_webhook_backoff_ms,
    )


def backoff_seconds(policy: RetryPolicy, attempt: int, *, jitter: float | None = None) -> float:
    # Exponential backoff with jitter in [0.5, 1.5) to spread retry storms.
    factor = jitter if jitter is not None else random.uniform(0.5, 1.5)
    return (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * factor


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            if policy.timeout_ms:
                return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
            return await func()
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            sleep_s = backoff_seconds(policy, attempt)
            if on_retry is not None:
                on_retry(attempt, exc, sleep_s)
            else:
                logger.warning("retry_scheduled attempt=%s sleep_s=%.2f error=%s", attempt, sleep_s, exc)
            await asyncio.sleep(sleep_s)
            attempt += 1
