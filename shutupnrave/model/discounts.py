"""Discount codes: checkout validation, redemption and admin CRUD.

Functions here run inside a transaction owned by the caller.
"""

from __future__ import annotations
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    DiscountNotFound, DuplicateDiscountCode, InvalidDiscountCode,
    ValidationError,
)
from ..helpers import random_code
from .db import Discount

CODE_MIN_LEN = 3
CODE_MAX_LEN = 32


def normalize_code(raw: Optional[str]) -> str:
    return (raw or "").strip().upper()


def check_percentage(percentage) -> float:
    if isinstance(percentage, bool) or not isinstance(percentage, (int, float)):
        raise ValidationError("Percentage must be a number")
    if not (0 < percentage <= 1):
        raise ValidationError("Percentage must be greater than 0 and at most 1")
    return float(percentage)


def _check_code(code: str) -> str:
    code = normalize_code(code)
    if not (CODE_MIN_LEN <= len(code) <= CODE_MAX_LEN):
        raise ValidationError(
            f"Code must be {CODE_MIN_LEN}-{CODE_MAX_LEN} characters"
        )
    return code


async def find_discount_by_code(
    db: AsyncSession, code: str
) -> Optional[Discount]:
    return (await db.execute(
        select(Discount).where(Discount.code == normalize_code(code))
    )).scalar_one_or_none()


async def validate_discount(db: AsyncSession, raw_code: str) -> Discount:
    """Return the active discount for `raw_code`. Read-only."""
    code = normalize_code(raw_code)
    if not code:
        raise InvalidDiscountCode()
    discount = await find_discount_by_code(db, code)
    if discount is None or not discount.is_active:
        raise InvalidDiscountCode()
    # rows written before range checks existed
    if not (0 < discount.percentage <= 1):
        raise InvalidDiscountCode()
    return discount


async def redeem(db: AsyncSession, discount_id: str) -> bool:
    """Count one use. Atomic at the SQL level; False if the row is gone."""
    result = await db.execute(
        update(Discount)
        .where(Discount.id == discount_id)
        .values(usage_count=Discount.usage_count + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ----------------------------
# Admin CRUD
# ----------------------------
async def get_discount(db: AsyncSession, discount_id: str) -> Discount:
    discount = await db.get(Discount, discount_id, populate_existing=True)
    if discount is None:
        raise DiscountNotFound()
    return discount


async def create_discount(
    db: AsyncSession, *, percentage, code: Optional[str] = None,
    is_active: bool = True,
) -> Discount:
    percentage = check_percentage(percentage)
    if code:
        code = _check_code(code)
    else:
        code = random_code(8)
    if await find_discount_by_code(db, code) is not None:
        raise DuplicateDiscountCode()
    discount = Discount(code=code, percentage=percentage,
                        is_active=bool(is_active), usage_count=0)
    db.add(discount)
    await db.flush()
    return discount


async def list_discounts(db: AsyncSession) -> List[Discount]:
    return list((await db.execute(
        select(Discount).order_by(Discount.created_at.desc())
    )).scalars())


async def set_discount_active(
    db: AsyncSession, discount_id: str, is_active: bool
) -> Discount:
    discount = await get_discount(db, discount_id)
    discount.is_active = bool(is_active)
    await db.flush()
    return discount


async def update_discount(
    db: AsyncSession, discount_id: str, *, code: str, percentage,
    is_active: bool,
) -> Discount:
    code = _check_code(code)
    percentage = check_percentage(percentage)
    discount = await get_discount(db, discount_id)
    other = await find_discount_by_code(db, code)
    if other is not None and other.id != discount.id:
        raise DuplicateDiscountCode()
    discount.code = code
    discount.percentage = percentage
    discount.is_active = bool(is_active)
    await db.flush()
    return discount


async def delete_discount(db: AsyncSession, discount_id: str) -> None:
    result = await db.execute(
        delete(Discount).where(Discount.id == discount_id)
    )
    if result.rowcount != 1:
        raise DiscountNotFound()
