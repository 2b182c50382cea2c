"""
Redis client initialization.

Redis holds the token revocation flags checked on every authenticated request.
"""

import redis.asyncio as redis
from backend.app.core.config import settings


redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


async def get_redis():
    """FastAPI dependency returning the shared Redis client."""
    return redis_client
