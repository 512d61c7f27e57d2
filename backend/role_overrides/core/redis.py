from typing import Optional

import redis.asyncio as redis

from role_overrides.core.config import settings

_redis: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Get or create the shared async Redis client."""
    global _redis

    if _redis is None:
        _redis = redis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            password=settings.REDIS_PASSWORD or None,
            decode_responses=True,
        )
    return _redis
