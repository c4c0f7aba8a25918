"""
Redis store for rate limiting state.

Holds:
- Sliding-window quota counters
- Abuse counters and bans
- Rate limit events and rollup metrics

The client is built once by the application (or the cleanup worker) and
injected into every component. `None` means "not configured": the subsystem
then fails open.
"""
from typing import Optional

import structlog
from redis import asyncio as redis_asyncio
from redis.exceptions import RedisError

from pastebin.core.config import Settings

logger = structlog.get_logger()

# Errors treated as "store unavailable" for a single call
STORE_ERRORS = (RedisError, OSError, ValueError)


def build_store(settings: Settings) -> Optional[redis_asyncio.Redis]:
    """Create the Redis client, or return None when the store is not configured."""
    if not settings.store_configured:
        logger.warning(
            "store.not_configured",
            message="REDIS_URL/REDIS_TOKEN missing, rate limiting disabled (fail open)",
        )
        return None

    client = redis_asyncio.from_url(
        settings.redis_url,
        password=settings.redis_token,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    logger.info("store.configured", url=_redact(settings.redis_url))
    return client


async def ping_store(client: Optional[redis_asyncio.Redis]) -> str:
    """Return "up", "disabled" or a short failure description."""
    if client is None:
        return "disabled"
    try:
        await client.ping()
        return "up"
    except STORE_ERRORS as e:
        logger.warning("store.ping_failed", error=str(e))
        return "down"


async def close_store(client: Optional[redis_asyncio.Redis]) -> None:
    if client is None:
        return
    try:
        await client.aclose()
    except STORE_ERRORS as e:
        logger.warning("store.close_failed", error=str(e))


def _redact(url: str) -> str:
    # Drop credentials embedded in the URL before logging it
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"
