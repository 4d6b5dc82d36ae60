from __future__ import annotations
from typing import Optional
import redis.asyncio as redis


# ---- keys
def k_event(evt: str) -> str: return f"webhook:event:{evt}"


class WebhookEventStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        """True the first time `evt_id` is seen; missing ids always pass."""
        if not evt_id:
            return True
        ok = await self.r.set(k_event(evt_id), "1", nx=True, ex=self.ttl)
        return bool(ok)

    async def forget(self, evt_id: str) -> None:
        await self.r.delete(k_event(evt_id))
