"""
Redis connection for the DocklyTask identity service.

Only short-lived keys live in Redis, each written with its own TTL:

- ``dt:auth_state:*``  OIDC state/nonce, consumed once by the callback
- ``dt:session:*``     server-side sessions keyed by the session cookie

Losing Redis logs users out but loses no data, so an unreachable server at
startup is logged and reported by /ready instead of stopping the process.
"""

from typing import Any

import redis.asyncio as aioredis

from docklytask.config import settings
from docklytask.logging_config import get_logger

logger = get_logger(__name__)

# Set by init_redis() during the application lifespan
_redis: aioredis.Redis | None = None


def _client_options() -> dict[str, Any]:
    timeout = settings.redis_timeout_seconds
    return {
        "decode_responses": True,
        "socket_timeout": timeout,
        "socket_connect_timeout": timeout,
    }


async def init_redis(redis_url: str | None = None) -> aioredis.Redis:
    """Create the shared client and check that the server answers.

    Args:
        redis_url: Overrides ``settings.redis_url`` (tests, one-off scripts).
    """
    global _redis  # noqa: PLW0603
    url = redis_url or str(settings.redis_url)
    logger.info("Initializing Redis connection")

    _redis = aioredis.from_url(url, **_client_options())
    try:
        await _redis.ping()
    except (aioredis.RedisError, OSError) as e:
        logger.warning("Redis unreachable at startup", error=str(e))
        return _redis
    logger.info("Redis connection established")
    return _redis


async def close_redis() -> None:
    global _redis  # noqa: PLW0603
    if _redis is None:
        return
    logger.info("Closing Redis connection")
    client, _redis = _redis, None
    await client.aclose()


def get_redis_client() -> aioredis.Redis:
    """The shared client used by auth state and session storage."""
    if _redis is None:
        raise RuntimeError("Redis client not initialized; call init_redis() first")
    return _redis


async def get_redis_health() -> bool:
    if _redis is None:
        return False
    try:
        return bool(await _redis.ping())
    except (aioredis.RedisError, OSError) as e:
        logger.error("Redis health check failed", error=str(e))
        return False
