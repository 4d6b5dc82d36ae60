from __future__ import annotations
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import WebhookEventSeen


class WebhookEventStore:
    def __init__(self, *, db: AsyncSession) -> None:
        self.db = db

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        """True the first time `evt_id` is seen; missing ids always pass."""
        if not evt_id:
            return True
        try:
            async with self.db.begin():
                seen = (await self.db.execute(
                    select(WebhookEventSeen.idempotency_key).where(
                        WebhookEventSeen.idempotency_key == evt_id
                    )
                )).first()
                if seen is not None:
                    return False
                self.db.add(WebhookEventSeen(idempotency_key=evt_id))
        except IntegrityError:
            # concurrent delivery of the same event won the insert
            return False
        return True

    async def forget(self, evt_id: str) -> None:
        async with self.db.begin():
            await self.db.execute(
                delete(WebhookEventSeen).where(
                    WebhookEventSeen.idempotency_key == evt_id
                )
            )
