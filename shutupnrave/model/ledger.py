"""Order ledger: the source of truth for payment and ticket state.

Every state change is a single conditional UPDATE, so the database row is
the serialization point:

    payment_status  PENDING -> PAID | FAILED   (never back)
    is_active       True -> False              (only when PAID + CONFIRMED)

`mark_paid` / `mark_failed` on an already resolved order are no-ops that
report `changed=False`; callers use that flag, not the final state, to
decide whether settlement side effects still have to run.

Functions here run inside a transaction owned by the caller.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AlreadyDeactivated, NotConfirmed, NotPaid, OrderNotFound
from ..helpers import now_ts
from . import discounts
from .db import (
    Affiliate, Order, OrderItem, TicketType, User,
    ORDER_CANCELLED, ORDER_CONFIRMED, ORDER_PENDING,
    PAYMENT_FAILED, PAYMENT_PAID, PAYMENT_PENDING,
)


@dataclass(frozen=True)
class Transition:
    order: Order
    changed: bool


async def get_order(db: AsyncSession, order_id: str) -> Optional[Order]:
    return (await db.execute(
        select(Order)
        .where(Order.order_id == order_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


async def require_order(db: AsyncSession, order_id: str) -> Order:
    order = await get_order(db, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


async def create_pending_order(
    db: AsyncSession,
    *,
    order_id: str,
    user: User,
    ticket_type: TicketType,
    quantity: int,
    unit_price: int,
    subtotal: int,
    discount_id: Optional[str],
    discount_code: Optional[str],
    discount_rate: Optional[float],
    discount_amount: int,
    processing_fee: int,
    total: int,
    currency: str,
    event_name: str,
    event_date: str,
    event_time: str,
    event_location: str,
    affiliate: Optional[Affiliate] = None,
) -> Order:
    """Insert a PENDING order together with its line item."""
    order = Order(
        order_id=order_id,
        user_id=user.id,
        status=ORDER_PENDING,
        payment_status=PAYMENT_PENDING,
        is_active=True,
        subtotal=subtotal,
        discount_id=discount_id,
        discount_code=discount_code,
        discount_rate=discount_rate,
        discount_amount=discount_amount,
        processing_fee=processing_fee,
        total=total,
        currency=currency,
        event_name=event_name,
        event_date=event_date,
        event_time=event_time,
        event_location=event_location,
        affiliate_id=affiliate.id if affiliate is not None else None,
        user=user,
        affiliate=affiliate,
        items=[OrderItem(
            ticket_type_id=ticket_type.id,
            ticket_type=ticket_type,
            quantity=quantity,
            unit_price=unit_price,
            total_price=unit_price * quantity,
        )],
    )
    db.add(order)
    await db.flush()
    return order


async def mark_paid(db: AsyncSession, order_id: str) -> Transition:
    ts = now_ts()
    result = await db.execute(
        update(Order)
        .where(Order.order_id == order_id,
               Order.payment_status == PAYMENT_PENDING)
        .values(payment_status=PAYMENT_PAID, status=ORDER_CONFIRMED,
                paid_at=ts, updated_at=ts)
        .execution_options(synchronize_session=False)
    )
    changed = result.rowcount == 1
    order = await require_order(db, order_id)
    if changed and order.discount_id:
        await discounts.redeem(db, order.discount_id)
    return Transition(order=order, changed=changed)


async def mark_failed(db: AsyncSession, order_id: str) -> Transition:
    result = await db.execute(
        update(Order)
        .where(Order.order_id == order_id,
               Order.payment_status == PAYMENT_PENDING)
        .values(payment_status=PAYMENT_FAILED, status=ORDER_CANCELLED,
                updated_at=now_ts())
        .execution_options(synchronize_session=False)
    )
    order = await require_order(db, order_id)
    return Transition(order=order, changed=result.rowcount == 1)


async def attach_qr_code(db: AsyncSession, order_id: str, url: str) -> bool:
    # never on an unpaid order
    result = await db.execute(
        update(Order)
        .where(Order.order_id == order_id,
               Order.payment_status == PAYMENT_PAID)
        .values(qr_code_url=url, updated_at=now_ts())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def check_deactivatable(order: Order) -> None:
    if not order.is_active:
        raise AlreadyDeactivated()
    if order.payment_status != PAYMENT_PAID:
        raise NotPaid()
    if order.status != ORDER_CONFIRMED:
        raise NotConfirmed()


async def deactivate(db: AsyncSession, order_id: str) -> Order:
    """Mark the ticket as used and drop its verification image reference."""
    order = await require_order(db, order_id)
    check_deactivatable(order)
    result = await db.execute(
        update(Order)
        .where(Order.order_id == order_id,
               Order.is_active.is_(True),
               Order.payment_status == PAYMENT_PAID,
               Order.status == ORDER_CONFIRMED)
        .values(is_active=False, qr_code_url=None, updated_at=now_ts())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # lost a race with another scan
        raise AlreadyDeactivated()
    return await require_order(db, order_id)


async def list_orders(
    db: AsyncSession,
    *,
    search: Optional[str] = None,
    payment_status: Optional[str] = None,
    active: Optional[bool] = None,
    page: int = 1,
    limit: int = 15,
) -> Tuple[int, List[Order]]:
    conds = []
    if search:
        like = f"%{search.strip()}%"
        conds.append(or_(
            Order.order_id.ilike(like),
            User.full_name.ilike(like),
            User.email.ilike(like),
            User.phone_number.ilike(like),
        ))
    if payment_status:
        conds.append(Order.payment_status == payment_status)
    if active is not None:
        conds.append(Order.is_active.is_(active))

    page = max(1, page)
    limit = max(1, min(limit, 100))

    total = (await db.execute(
        select(func.count(Order.id))
        .join(User, User.id == Order.user_id)
        .where(*conds)
    )).scalar_one()
    rows = (await db.execute(
        select(Order)
        .join(User, User.id == Order.user_id)
        .where(*conds)
        .order_by(Order.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )).scalars().all()
    return int(total), list(rows)
