import logging

import redis.asyncio as redis
from fastapi import Request

logger = logging.getLogger(__name__)


async def get_redis(request: Request) -> redis.Redis:
    """Get Redis client"""
    return request.app.state.redis


async def init_redis(url: str) -> redis.Redis:
    """Initialize Redis connection"""
    client = redis.from_url(url, decode_responses=True)

    # Test connection
    try:
        await client.ping()
        logger.info("Redis connection established")
    except Exception:
        logger.exception("Redis connection failed")
        raise
    return client
