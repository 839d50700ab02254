# config/cache.py
from typing import Optional
from redis.asyncio import Redis, from_url
from config.settings import settings
import logging

logger = logging.getLogger(__name__)

_client: Optional[Redis] = None


async def get_redis() -> Redis:
    """
    Shared client for the rate limiter and the document mirror.
    The client is only cached once a ping succeeds, so a failed startup
    attempt is retried on the next call instead of handing out a dead client.
    """
    global _client
    if _client is None:
        client = from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=False,  # documents are stored as raw JSON bytes
            socket_keepalive=True,
            health_check_interval=30,
        )
        try:
            await client.ping()
        except Exception:
            await client.aclose()
            raise
        logger.info("redis.connected url=%s", settings.REDIS_URL.split("@")[-1])
        _client = client
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
