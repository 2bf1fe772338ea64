"""Rate limiting utilities using Redis."""

import redis.asyncio as redis
import time
import uuid


class RateLimiter:
    """Sliding-window rate limiter using Redis sorted sets."""

    def __init__(self, redis_client: redis.Redis, prefix: str = "rate_limit"):
        self.redis_client = redis_client
        self.prefix = prefix

    async def check_rate_limit(
        self,
        key: str,
        limit: int = 100,
        window: int = 3600,
    ) -> bool:
        """Check if rate limit is exceeded; records the call when it is not."""
        full_key = f"{self.prefix}:{key}"
        current_time = time.time()
        window_start = current_time - window

        # Remove old entries
        await self.redis_client.zremrangebyscore(full_key, 0, window_start)

        count = await self.redis_client.zcard(full_key)
        if count >= limit:
            return False

        # Members must be unique or bursts within one second collapse
        await self.redis_client.zadd(full_key, {f"{current_time}:{uuid.uuid4().hex}": current_time})
        await self.redis_client.expire(full_key, window)

        return True

    async def reset_rate_limit(self, key: str) -> None:
        """Reset rate limit for a key."""
        await self.redis_client.delete(f"{self.prefix}:{key}")
