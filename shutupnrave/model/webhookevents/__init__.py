from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ._redis import WebhookEventStore as RedisWebhookEventStore
from ._sql import WebhookEventStore as SqlWebhookEventStore

BACKENDS = ("sql", "redis")


# Factory keeps server.py simple and constructor-agnostic:
def new_store(backend: str, *, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 7 * 24 * 3600):
    if backend == "sql":
        if db is None:
            raise RuntimeError(
                "WebhookEventStore(sql) requires db=AsyncSession"
            )
        return SqlWebhookEventStore(db=db)
    elif backend == "redis":
        if r is None:
            raise RuntimeError(
                "WebhookEventStore(redis) requires r=redis.Redis"
            )
        return RedisWebhookEventStore(r=r, ttl_seconds=ttl_seconds)
    raise RuntimeError(f"unknown webhook dedup backend: {backend!r}")


__all__ = [
    "RedisWebhookEventStore", "SqlWebhookEventStore", "new_store", "BACKENDS",
]
