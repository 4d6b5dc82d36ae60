"""Affiliates, commission rules and commission records.

Functions here run inside a transaction owned by the caller.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import bcrypt
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AffiliateNotFound, RefCodeUnavailable, ValidationError
from ..helpers import generate_ref_code, round_half_up
from .customers import find_user_by_email, upsert_user
from .db import (
    Affiliate, AffiliateCommission, AffiliateCommissionRule, Order,
    OrderItem, TicketType,
    COMMISSION_FIXED_AMOUNT, COMMISSION_PERCENTAGE,
    ORDER_CONFIRMED, PAYMENT_PAID,
)

# applies to ticket types without an explicit rule
DEFAULT_COMMISSION_RATE = 0.10
REF_CODE_ATTEMPTS = 5
MIN_PASSWORD_LEN = 6


async def find_affiliate_by_ref(
    db: AsyncSession, ref_code: Optional[str]
) -> Optional[Affiliate]:
    code = (ref_code or "").strip().upper()
    if not code:
        return None
    return (await db.execute(
        select(Affiliate).where(Affiliate.ref_code == code)
    )).scalar_one_or_none()


async def get_affiliate(db: AsyncSession, affiliate_id: str) -> Affiliate:
    affiliate = (await db.execute(
        select(Affiliate)
        .where(Affiliate.id == affiliate_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if affiliate is None:
        raise AffiliateNotFound()
    return affiliate


async def _unused_ref_code(db: AsyncSession, full_name: str) -> str:
    for _ in range(REF_CODE_ATTEMPTS):
        code = generate_ref_code(full_name)
        if await find_affiliate_by_ref(db, code) is None:
            return code
    raise RefCodeUnavailable()


# ----------------------------
# Portal passwords
# ----------------------------
def check_password_strength(password: str) -> None:
    if len(password) < MIN_PASSWORD_LEN:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LEN} characters"
        )


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return bcrypt.checkpw(password.encode(), password_hash.encode())


async def authenticate_affiliate(
    db: AsyncSession, email: str, password: str
) -> Optional[Affiliate]:
    """The affiliate for `email` if `password` matches its portal password."""
    user = await find_user_by_email(db, (email or "").strip().lower())
    if user is None:
        return None
    affiliate = (await db.execute(
        select(Affiliate).where(Affiliate.user_id == user.id)
    )).scalar_one_or_none()
    if affiliate is None or not verify_password(password or "",
                                                affiliate.password_hash):
        return None
    return affiliate


async def create_affiliate(
    db: AsyncSession, *, email: str, full_name: Optional[str] = None,
    phone_number: Optional[str] = None, password: Optional[str] = None,
) -> Tuple[Affiliate, bool]:
    """Create (or return the existing) affiliate for `email`.

    A given `password` becomes the affiliate's portal password, replacing
    any earlier one. Returns `(affiliate, created)`.
    """
    if password:
        check_password_strength(password)
    user = await upsert_user(db, email=email, full_name=full_name,
                             phone_number=phone_number)
    existing = (await db.execute(
        select(Affiliate).where(Affiliate.user_id == user.id)
    )).scalar_one_or_none()
    if existing is not None:
        if password:
            existing.password_hash = hash_password(password)
            await db.flush()
        return await get_affiliate(db, existing.id), False

    affiliate = Affiliate(
        user_id=user.id,
        ref_code=await _unused_ref_code(db, user.full_name),
        status="ACTIVE",
        password_hash=hash_password(password) if password else None,
    )
    db.add(affiliate)
    await db.flush()
    return await get_affiliate(db, affiliate.id), True


async def set_commission_rule(
    db: AsyncSession, affiliate: Affiliate, ticket_type: TicketType, *,
    commission_type: str, rate: Optional[float] = None,
    amount: Optional[int] = None,
) -> AffiliateCommissionRule:
    if commission_type == COMMISSION_PERCENTAGE:
        if rate is None or not (0 < rate <= 1):
            raise ValidationError("rate must be greater than 0 and at most 1")
        amount = None
    elif commission_type == COMMISSION_FIXED_AMOUNT:
        if amount is None or int(amount) < 0:
            raise ValidationError("amount must be a non-negative integer")
        amount = int(amount)
        rate = None
    else:
        raise ValidationError("commission type must be PERCENTAGE or "
                              "FIXED_AMOUNT")

    rule = (await db.execute(
        select(AffiliateCommissionRule).where(
            AffiliateCommissionRule.affiliate_id == affiliate.id,
            AffiliateCommissionRule.ticket_type_id == ticket_type.id,
        )
    )).scalar_one_or_none()
    if rule is None:
        rule = AffiliateCommissionRule(
            affiliate_id=affiliate.id, ticket_type_id=ticket_type.id,
            ticket_type=ticket_type,
        )
        db.add(rule)
    rule.commission_type = commission_type
    rule.rate = rate
    rule.amount = amount
    await db.flush()
    return rule


def rule_for(
    affiliate: Affiliate, ticket_type_id: str
) -> Optional[AffiliateCommissionRule]:
    for rule in affiliate.rules:
        if rule.ticket_type_id == ticket_type_id:
            return rule
    return None


def commission_for(affiliate: Affiliate, item: OrderItem) -> int:
    """Percentage of the line total, or a fixed amount per ticket."""
    rule = rule_for(affiliate, item.ticket_type_id)
    if rule is None:
        return round_half_up(
            Decimal(item.total_price) * Decimal(str(DEFAULT_COMMISSION_RATE))
        )
    if rule.commission_type == COMMISSION_FIXED_AMOUNT:
        return int(rule.amount or 0) * item.quantity
    return round_half_up(
        Decimal(item.total_price) * Decimal(str(rule.rate or 0))
    )


async def record_commissions(
    db: AsyncSession, affiliate: Affiliate, order: Order
) -> List[AffiliateCommission]:
    """Insert one commission per order item; existing pairs are skipped."""
    seen = set((await db.execute(
        select(AffiliateCommission.order_item_id).where(
            AffiliateCommission.affiliate_id == affiliate.id,
            AffiliateCommission.order_item_id.in_(
                [item.id for item in order.items]
            ),
        )
    )).scalars())

    created: List[AffiliateCommission] = []
    for item in order.items:
        if item.id in seen:
            continue
        commission = AffiliateCommission(
            affiliate_id=affiliate.id,
            order_item_id=item.id,
            ticket_type_id=item.ticket_type_id,
            commission_amount=commission_for(affiliate, item),
        )
        db.add(commission)
        created.append(commission)
    await db.flush()
    return created


def _settled(stmt):
    return stmt.where(Order.payment_status == PAYMENT_PAID,
                      Order.status == ORDER_CONFIRMED)


async def affiliate_stats(
    db: AsyncSession, affiliate_id: str
) -> Dict[str, Any]:
    """Sales and commission totals over paid, confirmed orders."""
    orders = (await db.execute(_settled(
        select(func.count(Order.id), func.coalesce(func.sum(Order.total), 0))
        .where(Order.affiliate_id == affiliate_id)
    ))).one()

    by_type: Dict[str, Dict[str, int]] = {}
    rows = (await db.execute(_settled(
        select(TicketType.name,
               func.coalesce(func.sum(OrderItem.quantity), 0),
               func.coalesce(func.sum(OrderItem.total_price), 0))
        .join(OrderItem, OrderItem.ticket_type_id == TicketType.id)
        .join(Order, Order.id == OrderItem.order_id)
        .where(Order.affiliate_id == affiliate_id)
        .group_by(TicketType.name)
    ))).all()
    for name, tickets, revenue in rows:
        by_type[name] = {"tickets": int(tickets), "revenue": int(revenue),
                         "commission": 0}

    rows = (await db.execute(_settled(
        select(TicketType.name,
               func.coalesce(func.sum(AffiliateCommission.commission_amount),
                             0))
        .join(AffiliateCommission,
              AffiliateCommission.ticket_type_id == TicketType.id)
        .join(OrderItem, OrderItem.id == AffiliateCommission.order_item_id)
        .join(Order, Order.id == OrderItem.order_id)
        .where(AffiliateCommission.affiliate_id == affiliate_id)
        .group_by(TicketType.name)
    ))).all()
    total_commission = 0
    for name, commission in rows:
        entry = by_type.setdefault(
            name, {"tickets": 0, "revenue": 0, "commission": 0}
        )
        entry["commission"] = int(commission)
        total_commission += int(commission)

    return {
        "orders": int(orders[0]),
        "revenue": int(orders[1]),
        "tickets": sum(v["tickets"] for v in by_type.values()),
        "total_commission": total_commission,
        "by_ticket_type": by_type,
    }


async def list_affiliates(
    db: AsyncSession, *, page: int = 1, limit: int = 20
) -> Tuple[int, List[Affiliate]]:
    page = max(1, page)
    limit = max(1, min(limit, 100))
    total = (await db.execute(select(func.count(Affiliate.id)))).scalar_one()
    rows = (await db.execute(
        select(Affiliate)
        .order_by(Affiliate.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )).scalars().all()
    return int(total), list(rows)
