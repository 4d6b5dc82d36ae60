"""Ticket pricing, discounts and processing fee.

All amounts are integers in kobo. The processing fee is 5% of the
subtotal *before* discount; the discount only reduces what is charged:

    total = subtotal - discount_amount + processing_fee

Every path (quote preview, checkout initialization, emails) goes through
`quote()`, so the rule cannot drift between them.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .errors import UnknownTicketType, ValidationError
from .helpers import round_half_up
from .model.customers import find_ticket_type
from .model.db import Discount
from .model.discounts import validate_discount

# base prices for ticket types that have never been sold
TICKET_PRICES = {
    "Solo Vibes": 5000,
    "Geng Energy": 8000,
}

PROCESSING_FEE_RATE = Decimal("0.05")
MAX_QUANTITY = 50


@dataclass(frozen=True)
class Quote:
    ticket_type: str
    quantity: int
    unit_price: int
    subtotal: int
    discount_id: Optional[str]
    discount_code: Optional[str]
    discount_rate: Optional[float]
    discount_amount: int
    processing_fee: int
    total: int

    def as_dict(self) -> dict:
        return {
            "ticket_type": self.ticket_type,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "subtotal": self.subtotal,
            "discount_code": self.discount_code,
            "discount_rate": self.discount_rate,
            "discount_amount": self.discount_amount,
            "processing_fee": self.processing_fee,
            "total": self.total,
        }


def base_price(name: str, prices: Optional[Mapping[str, int]] = None) -> int:
    prices = TICKET_PRICES if prices is None else prices
    try:
        return prices[name]
    except KeyError:
        raise UnknownTicketType(name)


def processing_fee(subtotal: int) -> int:
    return round_half_up(Decimal(subtotal) * PROCESSING_FEE_RATE)


def discount_amount(subtotal: int, rate: float) -> int:
    return round_half_up(Decimal(subtotal) * Decimal(str(rate)))


def check_quantity(quantity) -> int:
    if isinstance(quantity, int) and not isinstance(quantity, bool):
        qty = quantity
    elif isinstance(quantity, str) and quantity.strip().isdigit():
        qty = int(quantity.strip())
    else:
        raise ValidationError("Quantity must be a whole number")
    if qty < 1:
        raise ValidationError("Quantity must be at least 1")
    if qty > MAX_QUANTITY:
        raise ValidationError(f"At most {MAX_QUANTITY} tickets per order")
    return qty


def quote(
    ticket_type: str,
    quantity: int,
    *,
    unit_price: Optional[int] = None,
    discount: Optional[Discount] = None,
    prices: Optional[Mapping[str, int]] = None,
) -> Quote:
    """Price a selection. Pure; `discount` must already be validated.

    `unit_price` is the stored TicketType price when the type has been
    sold before; the static table only prices a type's first sale.
    """
    known = base_price(ticket_type, prices)
    qty = check_quantity(quantity)
    unit = known if unit_price is None else unit_price
    subtotal = unit * qty

    amount_off = 0
    if discount is not None:
        amount_off = discount_amount(subtotal, discount.percentage)

    fee = processing_fee(subtotal)
    return Quote(
        ticket_type=ticket_type,
        quantity=qty,
        unit_price=unit,
        subtotal=subtotal,
        discount_id=discount.id if discount is not None else None,
        discount_code=discount.code if discount is not None else None,
        discount_rate=discount.percentage if discount is not None else None,
        discount_amount=amount_off,
        processing_fee=fee,
        total=subtotal - amount_off + fee,
    )


async def resolve(
    db: AsyncSession,
    ticket_type: str,
    quantity: int,
    discount_code: Optional[str] = None,
    prices: Optional[Mapping[str, int]] = None,
) -> Quote:
    """Look up the stored price and discount, then quote. Read-only."""
    base_price(ticket_type, prices)
    existing = await find_ticket_type(db, ticket_type)
    discount = None
    if discount_code and discount_code.strip():
        discount = await validate_discount(db, discount_code)
    return quote(
        ticket_type,
        quantity,
        unit_price=existing.price if existing is not None else None,
        discount=discount,
        prices=prices,
    )
