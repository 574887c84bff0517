"""Redis client and webhook delivery de-duplication.

Gateways deliver webhooks at least once, so the same event id can arrive
twice, sometimes concurrently. ``claim_idempotency`` marks an event id with
an atomic ``SET NX`` and a TTL; the second delivery sees the marker and is
acknowledged without being dispatched. Payment status checks in the engine
still make every handler idempotent on their own, so the marker only saves
work and is never the sole guard.

Usage:
    from service_escrow.infrastructure.redis_client import init_redis, get_redis

    redis = await init_redis()
    if await claim_idempotency(redis, "webhook:evt_123", ttl_seconds=86400):
        ...
"""

from __future__ import annotations

import redis.asyncio as aioredis

from service_escrow.config import get_settings
from service_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None

KEY_PREFIX = "idempotency:"


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def get_redis_or_none() -> aioredis.Redis | None:
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


async def claim_idempotency(
    redis: aioredis.Redis, key: str, ttl_seconds: int, value: str = "1"
) -> bool:
    """Atomically mark ``key`` as used.

    Returns True if this caller claimed the key, False if it already existed.
    """
    claimed = await redis.set(f"{KEY_PREFIX}{key}", value, ex=ttl_seconds, nx=True)
    return bool(claimed)


async def release_idempotency(redis: aioredis.Redis, key: str) -> None:
    """Drop a claim so a failed delivery can be retried by the sender."""
    await redis.delete(f"{KEY_PREFIX}{key}")


async def check_idempotency(redis: aioredis.Redis, key: str) -> bool:
    """Return True if ``key`` has already been claimed."""
    return bool(await redis.exists(f"{KEY_PREFIX}{key}"))
