"""
Redis client for billing leases (advisory locks and sweep single-flight).

Todas as chaves do servico ficam sob ``billsync:``; use ``redis_key``.
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Optional

from redis.asyncio import Redis

from billsync.core.config import settings

KEY_PREFIX = "billsync"

_redis_client: Optional[Redis] = None


def redis_key(*parts: object) -> str:
    """``redis_key("lock", "x")`` -> ``billsync:lock:x``."""
    return ":".join([KEY_PREFIX, *(str(part) for part in parts)])


def create_redis_client() -> Redis:
    """
    Build a fresh async Redis client.

    Celery tasks rodam cada job em ``asyncio.run`` proprio e precisam de um
    client novo por event loop.
    """
    return Redis.from_url(settings.REDIS_URL, decode_responses=True)


def get_redis_client() -> Redis:
    """Process-wide client used by the API (one event loop)."""
    global _redis_client
    if _redis_client is None:
        _redis_client = create_redis_client()
    return _redis_client


async def get_redis() -> AsyncGenerator[Redis, None]:
    """FastAPI dependency; tests override it with an in-memory fake."""
    yield get_redis_client()


async def close_redis_client() -> None:
    """Called from the app lifespan on shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
