import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from fastapi import Depends, Request

from app.core.redis_client import get_redis

logger = logging.getLogger(__name__)


class ResponseCache:
    """Per-user response cache.

    Keys are ``cache:{user_id}:{path?query}`` so every filter/sort/page
    combination is cached on its own, and ``invalidate_users`` drops a user's
    whole namespace without touching anyone else's.
    """

    def __init__(self, client: redis.Redis, ttl: int = 300):
        self.client = client
        self.ttl = ttl

    @staticmethod
    def key(user_id: int, path: str) -> str:
        return f"cache:{user_id}:{path}"

    @staticmethod
    def request_path(request: Request) -> str:
        query = request.url.query
        return f"{request.url.path}?{query}" if query else request.url.path

    async def get(self, user_id: int, path: str) -> Optional[Any]:
        key = self.key(user_id, path)
        try:
            cached = await self.client.get(key)
        except redis.RedisError:
            logger.warning("Cache read failed for %s", key, exc_info=True)
            return None
        if cached is None:
            logger.debug("Cache miss: %s", key)
            return None
        logger.debug("Cache hit: %s", key)
        return json.loads(cached)

    async def set(self, user_id: int, path: str, body: Any) -> None:
        key = self.key(user_id, path)
        try:
            await self.client.set(key, json.dumps(body, default=str), ex=self.ttl)
        except redis.RedisError:
            logger.warning("Cache write failed for %s", key, exc_info=True)

    async def invalidate_users(self, *user_ids: int) -> int:
        """Delete every cached response for the given users."""
        removed = 0
        for user_id in {uid for uid in user_ids if uid is not None}:
            try:
                keys = [key async for key in self.client.scan_iter(match=f"cache:{user_id}:*", count=100)]
                if keys:
                    removed += await self.client.delete(*keys)
            except redis.RedisError:
                logger.warning("Cache invalidation failed for user %s", user_id, exc_info=True)
        if removed:
            logger.info("Cleared %d cache keys", removed)
        return removed


async def get_cache(request: Request, client: redis.Redis = Depends(get_redis)) -> ResponseCache:
    return ResponseCache(client, ttl=request.app.state.settings.CACHE_TTL_SECONDS)
