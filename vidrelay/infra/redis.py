import logging
from typing import Optional

import redis.asyncio as aioredis

from vidrelay.config.settings import config
from vidrelay.core.state import state

logger = logging.getLogger(__name__)


async def init_redis() -> Optional[aioredis.Redis]:
    """Connect to Redis when enabled; the service runs without it"""
    if not config.redis.enabled:
        return None

    try:
        redis_client = aioredis.from_url(
            config.redis.url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=config.redis.socket_timeout
        )
        await redis_client.ping()
        logger.info("Redis connected, probe cache enabled")
        return redis_client
    except Exception as e:
        logger.warning(f"Redis connection failed, probe cache disabled: {str(e)}")
        return None


def get_redis() -> Optional[aioredis.Redis]:
    """Get Redis client from state"""
    return state.redis


async def close_redis() -> None:
    """Close Redis connection"""
    if state.redis:
        await state.redis.aclose()
        state.redis = None
        logger.info("Redis connection closed")
