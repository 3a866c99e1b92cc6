import json

import redis.asyncio as redis
from reconciler.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


class RedisSignalLedger:
    """
    Remembers vendor webhook bodies that were reconciled successfully, so an identical
    redelivery is answered as a replay without touching the order again.
    Only successes are recorded: a failed signal stays retryable.
    """

    def __init__(self, r: redis.Redis, ttl_seconds: int = 86400):
        self.r = r
        self.ttl_seconds = ttl_seconds

    async def lookup(self, key: str) -> dict | None:
        raw = await self.r.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def record(self, key: str, value: dict) -> None:
        # SET NX: the first successful delivery wins
        await self.r.set(key, json.dumps(value), nx=True, ex=self.ttl_seconds)
