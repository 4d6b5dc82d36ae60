"""Entry control: mark a settled ticket as used."""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from .assets import AssetHostError, AssetStore, is_data_url
from .model import ledger
from .model.db import Order

logger = structlog.get_logger(__name__)


async def deactivate_ticket(
    db: AsyncSession, assets: AssetStore, order_id: str
) -> Order:
    """Flip `is_active` off, then delete the hosted QR image best-effort.

    Raises AlreadyDeactivated, NotPaid, NotConfirmed or OrderNotFound; a
    failed guard leaves both the order and the image untouched.
    """
    async with db.begin():
        previous_url = (await ledger.require_order(db, order_id)).qr_code_url
        order = await ledger.deactivate(db, order_id)
    logger.info("tickets.deactivated", order_id=order_id)

    if previous_url and not is_data_url(previous_url):
        try:
            await assets.delete(previous_url)
        except AssetHostError as e:
            logger.warning("tickets.qr_delete_failed", order_id=order_id,
                           url=previous_url, error=repr(e))
    return order
