from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from redis.asyncio import Redis

from dbkeeper.core.config import get_settings


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TargetLease:
    target: str
    token: str
    redis_key: str | None


class TargetLockManager:
    """Per-target exclusivity: an in-process lock, plus a Redis lock across processes when configured."""

    def __init__(
        self,
        *,
        redis_url: str | None = None,
        redis: Any | None = None,
        ttl_s: int | None = None,
        prefix: str | None = None,
    ) -> None:
        settings = get_settings()
        self._redis_url = redis_url if redis_url is not None else settings.redis_url
        self._redis = redis
        self._ttl_s = max(5, int(ttl_s if ttl_s is not None else settings.target_lock_ttl_s))
        self._prefix = prefix or settings.target_lock_prefix
        self._local: dict[str, asyncio.Lock] = {}
        self._owners: dict[str, str] = {}

    def _local_lock(self, target: str) -> asyncio.Lock:
        lock = self._local.get(target)
        if lock is None:
            lock = asyncio.Lock()
            self._local[target] = lock
        return lock

    def _redis_client(self) -> Any | None:
        if self._redis is None and self._redis_url:
            try:
                self._redis = Redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
            except Exception as exc:  # noqa: BLE001 - fall back to process-local locking
                logger.warning("target_lock_redis_unavailable error=%s", exc)
                self._redis_url = None
                return None
        return self._redis

    def redis_key(self, target: str) -> str:
        return f"{self._prefix}:{target}"

    def is_locked(self, target: str) -> bool:
        return self._local_lock(target).locked()

    async def acquire(self, target: str) -> TargetLease | None:
        # Non-blocking: None means another run owns the target.
        lock = self._local_lock(target)
        if lock.locked():
            return None
        await lock.acquire()
        token = uuid4().hex
        redis = self._redis_client()
        key: str | None = None
        if redis is not None:
            key = self.redis_key(target)
            try:
                acquired = await redis.set(key, token, nx=True, ex=self._ttl_s)
            except BaseException:
                lock.release()
                raise
            if not acquired:
                lock.release()
                logger.info("target_lock_held_elsewhere target=%s", target)
                return None
        self._owners[target] = token
        return TargetLease(target=target, token=token, redis_key=key)

    async def release(self, lease: TargetLease) -> None:
        # Release only what this lease still owns so a newer holder is never clobbered.
        try:
            if lease.redis_key is not None and self._redis is not None:
                current = await self._redis.get(lease.redis_key)
                if current == lease.token:
                    await self._redis.delete(lease.redis_key)
        finally:
            lock = self._local_lock(lease.target)
            if self._owners.get(lease.target) == lease.token and lock.locked():
                del self._owners[lease.target]
                lock.release()

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
