"""Redis client shared by the rate limiter and the readiness check.

Only opened at startup; the in-memory rate limiter works without it, so a
deployment that never sets ``rate_limit_backend="redis"`` still pings it
for ``/api/ready``.
"""

import redis.asyncio as redis
import structlog

from metering.core.config import get_settings

logger = structlog.get_logger(__name__)

_client: redis.Redis | None = None


async def init_redis(url: str | None = None) -> None:
    """Connect and ping once. A second call is a no-op."""
    global _client

    if _client is not None:
        return

    client = redis.from_url(
        url or get_settings().redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    await client.ping()
    _client = client
    logger.info("redis_connected")


async def close_redis() -> None:
    global _client

    if _client is None:
        return
    await _client.aclose()
    _client = None
    logger.info("redis_closed")


def get_redis() -> redis.Redis:
    """Raises RuntimeError before ``init_redis()``; the health route relies on that."""
    if _client is None:
        raise RuntimeError("Redis client is not connected")
    return _client
