"""
Redis leases — advisory locks por assinatura e single-flight por sweep.

Lease = ``SET key token NX EX ttl``; a liberacao so apaga a chave se o token
ainda for nosso. Holders que morrem liberam por expiracao do TTL.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID, uuid4

from billsync.core.config import settings
from billsync.core.exceptions import LockNotAcquired
from billsync.core.redis import redis_key

logger = logging.getLogger(__name__)

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

LOCK_POLL_INTERVAL_SECONDS = 0.1


class RedisLease:
    """Single time-boxed lease on one Redis key."""

    def __init__(self, redis: Any, key: str, ttl_seconds: int) -> None:
        self._redis = redis
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.token = uuid4().hex

    async def acquire(self) -> bool:
        acquired = await self._redis.set(self.key, self.token, nx=True, ex=self.ttl_seconds)
        return bool(acquired)

    async def release(self) -> bool:
        released = await self._redis.eval(_RELEASE_SCRIPT, 1, self.key, self.token)
        if not released:
            logger.warning("lease_release_skipped: key=%s (expirado ou tomado)", self.key)
        return bool(released)


def subscription_lock_key(user_id: UUID) -> str:
    """
    Lock key for the subscriptions owned by ``user_id``.

    Assinatura e por usuario; a chave precisa existir antes da linha para
    cobrir a criacao (checkout, fallback free, recovery).
    """
    return f"subscription-owner:{user_id}"


class AdvisoryLock:
    """
    Short-TTL per-entity lock taken before mutating a subscription.

    ``wait_seconds=0`` falha de imediato (sweeps pulam a linha); handlers de
    webhook esperam um pouco antes de desistir.
    """

    def __init__(
        self,
        redis: Any,
        *,
        ttl_seconds: int = 30,
        wait_seconds: float = 0.0,
        prefix: str = redis_key("lock"),
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._wait = wait_seconds
        self._prefix = prefix

    @classmethod
    def from_settings(cls, redis: Any, *, wait: bool = True) -> AdvisoryLock:
        return cls(
            redis,
            ttl_seconds=settings.SUBSCRIPTION_LOCK_TTL_SECONDS,
            wait_seconds=settings.SUBSCRIPTION_LOCK_WAIT_SECONDS if wait else 0.0,
        )

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[RedisLease]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Raises:
            LockNotAcquired: outro writer segura o lock alem da espera.
        """
        lease = RedisLease(self._redis, f"{self._prefix}:{key}", self._ttl)
        if not await self._acquire(lease):
            raise LockNotAcquired(key)
        try:
            yield lease
        finally:
            await lease.release()

    async def _acquire(self, lease: RedisLease) -> bool:
        if await lease.acquire():
            return True
        remaining = self._wait
        while remaining > 0:
            await asyncio.sleep(LOCK_POLL_INTERVAL_SECONDS)
            remaining -= LOCK_POLL_INTERVAL_SECONDS
            if await lease.acquire():
                return True
        return False


class SingleFlight:
    """At most one running instance per job name."""

    def __init__(
        self,
        redis: Any,
        *,
        ttl_seconds: int = 900,
        prefix: str = redis_key("sweep"),
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._prefix = prefix

    @classmethod
    def from_settings(cls, redis: Any) -> SingleFlight:
        return cls(redis, ttl_seconds=settings.SWEEP_LEASE_TTL_SECONDS)

    @asynccontextmanager
    async def guard(self, name: str) -> AsyncIterator[bool]:
        """Yields True when this caller owns the run, False if another holds it."""
        lease = RedisLease(self._redis, f"{self._prefix}:{name}", self._ttl)
        if not await lease.acquire():
            logger.info("single_flight_skip: job=%s ja em execucao", name)
            yield False
            return
        try:
            yield True
        finally:
            await lease.release()
