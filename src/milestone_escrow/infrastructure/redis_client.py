"""Redis client for idempotency keys and health checks.

Usage:
    from milestone_escrow.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await redis.set("key", "value", ex=3600)
"""

from __future__ import annotations

import redis.asyncio as aioredis

from milestone_escrow.config import Settings, get_settings
from milestone_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None

IDEMPOTENCY_PREFIX = "idempotency"


async def init_redis(settings: Settings | None = None) -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = settings or get_settings()
    client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity before publishing the handle
    await client.ping()
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def set_redis(client: aioredis.Redis | None) -> None:
    """Install a client directly (used by tests and alternative bootstraps)."""
    global _redis_client
    _redis_client = client


def is_redis_ready() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


def _idempotency_key(scope: str, key: str) -> str:
    return f"{IDEMPOTENCY_PREFIX}:{scope}:{key}"


async def claim_idempotency(scope: str, key: str, value: str = "1") -> bool:
    """Atomically claim an idempotency key with a TTL.

    Returns True if the key was new (the caller may proceed), False if it
    was already claimed by an earlier request.
    """
    settings = get_settings()
    redis = get_redis()
    claimed = await redis.set(
        _idempotency_key(scope, key),
        value,
        ex=settings.redis_idempotency_ttl_seconds,
        nx=True,
    )
    return bool(claimed)


async def release_idempotency(scope: str, key: str) -> None:
    """Forget a claimed key so a failed operation can be retried."""
    redis = get_redis()
    await redis.delete(_idempotency_key(scope, key))
