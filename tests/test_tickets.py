import pytest
from sqlalchemy import update

from shutupnrave.errors import AlreadyDeactivated, NotConfirmed, NotPaid
from shutupnrave.model import ledger
from shutupnrave.model.db import Order, ORDER_REFUNDED
from shutupnrave.tickets import deactivate_ticket


async def _settled(orchestrator, place_order) -> str:
    order_id = await place_order()
    await orchestrator.complete_checkout(order_id)
    return order_id


class TestDeactivateTicket:
    async def test_marks_used_and_removes_image(self, db, orchestrator,
                                                place_order, assets):
        order_id = await _settled(orchestrator, place_order)
        order = await deactivate_ticket(db, assets, order_id)

        assert order.is_active is False
        assert order.qr_code_url is None
        assert assets.deleted == [f"https://cdn.test/qr/{order_id}.png"]

    async def test_second_scan_is_rejected(self, db, orchestrator,
                                           place_order, assets):
        order_id = await _settled(orchestrator, place_order)
        await deactivate_ticket(db, assets, order_id)
        async with db.begin():
            before = await ledger.require_order(db, order_id)
            snapshot = (before.is_active, before.updated_at)

        with pytest.raises(AlreadyDeactivated):
            await deactivate_ticket(db, assets, order_id)

        async with db.begin():
            after = await ledger.require_order(db, order_id)
        assert (after.is_active, after.updated_at) == snapshot
        assert len(assets.deleted) == 1

    async def test_pending_order(self, db, place_order, assets):
        order_id = await place_order()
        with pytest.raises(NotPaid):
            await deactivate_ticket(db, assets, order_id)
        async with db.begin():
            order = await ledger.require_order(db, order_id)
        assert order.is_active is True

    async def test_declined_order(self, db, orchestrator, place_order,
                                  gateway, assets):
        order_id = await place_order()
        gateway.outcomes[order_id] = "failed"
        await orchestrator.complete_checkout(order_id)
        with pytest.raises(NotPaid):
            await deactivate_ticket(db, assets, order_id)

    async def test_paid_but_not_confirmed(self, db, paid_order, assets):
        order = await paid_order()
        async with db.begin():
            await db.execute(update(Order)
                             .where(Order.order_id == order.order_id)
                             .values(status=ORDER_REFUNDED))
        with pytest.raises(NotConfirmed):
            await deactivate_ticket(db, assets, order.order_id)

    async def test_image_delete_failure_is_tolerated(
        self, db, orchestrator, place_order, assets
    ):
        order_id = await _settled(orchestrator, place_order)
        assets.fail_delete = True
        order = await deactivate_ticket(db, assets, order_id)
        assert order.is_active is False
        assert order.qr_code_url is None

    async def test_inline_image_is_not_deleted_remotely(
        self, db, orchestrator, place_order, assets
    ):
        assets.fail_upload = True
        order_id = await _settled(orchestrator, place_order)
        await deactivate_ticket(db, assets, order_id)
        assert assets.deleted == []
