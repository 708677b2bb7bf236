"""Redis-backed mutual exclusion and idempotency result cache.

The lock keeps two concurrent admissions with the same idempotency key from
both passing the "not processed yet" check; the cache keeps a later,
non-concurrent duplicate from re-running side effects. Neither is enough on
its own.

Locks carry no fencing token: a holder that stalls past the TTL can still be
inside its critical section when the next holder acquires the same name.
"""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, TypeVar

import redis.asyncio as aioredis

from paynotify.common.errors import LockAcquisitionTimeout
from paynotify.common.logging import logger


T = TypeVar("T")

LOCK_PREFIX = "lock:"
IDEMPOTENCY_PREFIX = "idempotency:"


class RedisLockStore:
    """TTL mutex + idempotency cache over one Redis client owned by the caller."""

    def __init__(self, client: aioredis.Redis, poll_interval_seconds: float = 0.1) -> None:
        self.client = client
        self.poll_interval_seconds = poll_interval_seconds

    async def acquire_lock(self, name: str, ttl_ms: int = 10_000) -> bool:
        """Atomic set-if-absent with expiry; returns whether this caller now holds the lock."""

        acquired = await self.client.set(f"{LOCK_PREFIX}{name}", str(time.time()), px=ttl_ms, nx=True)
        if acquired:
            logger.debug("lock_acquired name=%s ttl_ms=%s", name, ttl_ms)
            return True
        return False

    async def release_lock(self, name: str) -> None:
        await self.client.delete(f"{LOCK_PREFIX}{name}")
        logger.debug("lock_released name=%s", name)

    async def with_lock(
        self,
        name: str,
        fn: Callable[[], Awaitable[T]],
        ttl_ms: int = 10_000,
        max_wait_ms: int = 5_000,
    ) -> T:
        """Run `fn` while holding `name`, polling until `max_wait_ms` elapses.

        The lock is always released once `fn` finishes, including when it
        raises. Raises `LockAcquisitionTimeout` if the lock never frees up.
        """

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait_ms / 1000
        while loop.time() < deadline:
            if await self.acquire_lock(name, ttl_ms):
                try:
                    return await fn()
                finally:
                    await self.release_lock(name)
            await asyncio.sleep(self.poll_interval_seconds)

        logger.warning("lock_wait_timeout name=%s max_wait_ms=%s", name, max_wait_ms)
        raise LockAcquisitionTimeout(name, max_wait_ms)

    async def get_idempotency_result(self, key: str) -> dict[str, Any] | None:
        cached = await self.client.get(f"{IDEMPOTENCY_PREFIX}{key}")
        if cached is None:
            return None
        logger.debug("idempotency_cache_hit key=%s", key)
        return json.loads(cached)

    async def set_idempotency_result(self, key: str, result: dict[str, Any], ttl_hours: int = 24) -> None:
        await self.client.set(f"{IDEMPOTENCY_PREFIX}{key}", json.dumps(result), ex=ttl_hours * 3600)

    async def ping(self) -> bool:
        return bool(await self.client.ping())
