"""Checkout orchestration: initialize a payment, then verify and settle it.

    initiate_checkout  -> PENDING order + gateway redirect URL
    complete_checkout  -> verify with the gateway, flip PENDING -> PAID|FAILED,
                          run fulfillment only if *this* call flipped it

Both return tagged outcomes (`CheckoutStarted`, `CheckoutSettled`,
`CheckoutFailed`); domain errors raised below this layer are converted
here, so callers branch on values.

The gateway reference is the order id, so `complete_checkout` may be
called any number of times (browser return, webhook, manual retry).
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Mapping, Optional, Union

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import pricing
from .config import Settings
from .errors import (
    DomainError, OrderNotFound, PaymentDeclined, PaymentInitFailed,
    ValidationError, VerificationUnavailable,
)
from .fulfillment import FulfillmentPipeline, FulfillmentReport
from .helpers import generate_order_id, is_valid_email, is_valid_phone
from .model import ledger
from .model.affiliates import find_affiliate_by_ref
from .model.customers import get_or_create_ticket_type, upsert_user
from .model.db import Order, PAYMENT_FAILED, PAYMENT_PAID
from .paystack import GatewayError, PaymentAdapter

logger = structlog.get_logger(__name__)

ORDER_ID_ATTEMPTS = 5
MIN_NAME_LEN = 4


@dataclass(frozen=True)
class Customer:
    full_name: str
    email: str
    phone_number: str


def validate_customer(full_name: Optional[str], email: Optional[str],
                      phone_number: Optional[str]) -> Customer:
    full_name = (full_name or "").strip()
    email = (email or "").strip().lower()
    phone_number = (phone_number or "").strip()
    if len(full_name) < MIN_NAME_LEN:
        raise ValidationError(
            f"Full name must be at least {MIN_NAME_LEN} characters"
        )
    if not is_valid_email(email):
        raise ValidationError("Please enter a valid email address")
    if not is_valid_phone(phone_number):
        raise ValidationError("Phone number must be 11 digits")
    return Customer(full_name=full_name, email=email,
                    phone_number=phone_number)


# ----------------------------
# Outcomes
# ----------------------------
@dataclass(frozen=True)
class CheckoutStarted:
    order_id: str
    reference: str
    payment_url: str
    access_code: Optional[str]
    quote: pricing.Quote


@dataclass(frozen=True)
class CheckoutSettled:
    order: Order
    newly_settled: bool
    report: Optional[FulfillmentReport] = None


@dataclass(frozen=True)
class CheckoutFailed:
    error: DomainError


CheckoutOutcome = Union[CheckoutStarted, CheckoutSettled, CheckoutFailed]


class CheckoutOrchestrator:
    def __init__(
        self,
        db: AsyncSession,
        *,
        gateway: PaymentAdapter,
        fulfillment: FulfillmentPipeline,
        settings: Settings,
        prices: Optional[Mapping[str, int]] = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.fulfillment = fulfillment
        self.settings = settings
        self.prices = prices

    async def _create_pending(
        self, customer: Customer, ticket_type: str, quantity,
        discount_code: Optional[str], affiliate_ref: Optional[str],
    ):
        # user, ticket type and order commit together; an order id collision
        # rolls everything back and the whole unit is retried
        s = self.settings
        for attempt in range(1, ORDER_ID_ATTEMPTS + 1):
            order_id = generate_order_id()
            try:
                async with self.db.begin():
                    q = await pricing.resolve(self.db, ticket_type, quantity,
                                              discount_code, self.prices)
                    user = await upsert_user(
                        self.db, email=customer.email,
                        full_name=customer.full_name,
                        phone_number=customer.phone_number,
                    )
                    tt = await get_or_create_ticket_type(
                        self.db, ticket_type, q.unit_price, s.event_name
                    )
                    affiliate = await find_affiliate_by_ref(self.db,
                                                            affiliate_ref)
                    if affiliate_ref and affiliate is None:
                        logger.info("checkout.unknown_ref_code",
                                    ref_code=affiliate_ref)
                    order = await ledger.create_pending_order(
                        self.db,
                        order_id=order_id,
                        user=user,
                        ticket_type=tt,
                        quantity=q.quantity,
                        unit_price=q.unit_price,
                        subtotal=q.subtotal,
                        discount_id=q.discount_id,
                        discount_code=q.discount_code,
                        discount_rate=q.discount_rate,
                        discount_amount=q.discount_amount,
                        processing_fee=q.processing_fee,
                        total=q.total,
                        currency=s.currency,
                        event_name=s.event_name,
                        event_date=s.event_date,
                        event_time=s.event_time,
                        event_location=s.event_location,
                        affiliate=affiliate,
                    )
                return order, q
            except IntegrityError as e:
                logger.warning("checkout.create_conflict", order_id=order_id,
                               attempt=attempt)
                if attempt == ORDER_ID_ATTEMPTS:
                    logger.error("checkout.order_id_exhausted",
                                 attempts=attempt)
                    raise PaymentInitFailed() from e

    async def initiate_checkout(
        self,
        customer: Customer,
        ticket_type: str,
        quantity,
        discount_code: Optional[str] = None,
        affiliate_ref: Optional[str] = None,
    ) -> CheckoutOutcome:
        try:
            customer = validate_customer(customer.full_name, customer.email,
                                         customer.phone_number)
            order, q = await self._create_pending(
                customer, ticket_type, quantity, discount_code, affiliate_ref
            )
        except DomainError as e:
            logger.info("checkout.rejected", code=e.code.value,
                        reason=e.message, ticket_type=ticket_type)
            return CheckoutFailed(e)

        result = await self.gateway.initialize(
            order_id=order.order_id,
            amount=order.total,
            email=customer.email,
            metadata={
                "orderId": order.order_id,
                "userId": order.user_id,
                "ticketType": q.ticket_type,
                "quantity": q.quantity,
                "customerName": customer.full_name,
                "customerPhone": customer.phone_number,
                "discountCode": q.discount_code,
            },
            callback_url=self.settings.callback_url,
        )
        if isinstance(result, GatewayError):
            # the PENDING order stays behind; it carries no payment
            logger.warning("checkout.init_failed", order_id=order.order_id,
                           kind=result.kind, status_code=result.status_code)
            return CheckoutFailed(PaymentInitFailed())

        logger.info("checkout.started", order_id=order.order_id,
                    total=order.total, discount_code=q.discount_code,
                    affiliate_id=order.affiliate_id)
        return CheckoutStarted(
            order_id=order.order_id,
            reference=result.reference,
            payment_url=result.payment_url,
            access_code=result.access_code,
            quote=q,
        )

    async def complete_checkout(self, reference: str) -> CheckoutOutcome:
        reference = (reference or "").strip()
        async with self.db.begin():
            order = await ledger.get_order(self.db, reference)
        if order is None:
            return CheckoutFailed(OrderNotFound(reference))

        result = await self.gateway.verify(reference)
        if isinstance(result, GatewayError):
            logger.warning("checkout.verify_unavailable", order_id=reference,
                           kind=result.kind, status_code=result.status_code)
            return CheckoutFailed(VerificationUnavailable())
        if result.in_flight:
            logger.info("checkout.verify_in_flight", order_id=reference,
                        status=result.raw_status)
            return CheckoutFailed(VerificationUnavailable())

        if not result.succeeded:
            async with self.db.begin():
                t = await ledger.mark_failed(self.db, reference)
            if t.order.payment_status == PAYMENT_PAID:
                logger.warning("checkout.decline_after_paid",
                               order_id=reference, status=result.raw_status)
                return CheckoutSettled(order=t.order, newly_settled=False)
            logger.info("checkout.declined", order_id=reference,
                        status=result.raw_status, changed=t.changed)
            return CheckoutFailed(PaymentDeclined())

        if result.amount is not None and result.amount != order.total:
            logger.warning("checkout.amount_mismatch", order_id=reference,
                           expected=order.total, paid=result.amount)

        async with self.db.begin():
            t = await ledger.mark_paid(self.db, reference)
        if t.order.payment_status == PAYMENT_FAILED:
            # money moved for an order we already gave up on
            logger.error("checkout.paid_after_failed", order_id=reference,
                         amount=result.amount)
            return CheckoutFailed(PaymentDeclined())
        if not t.changed:
            return CheckoutSettled(order=t.order, newly_settled=False)

        logger.info("checkout.settled", order_id=reference,
                    total=t.order.total)
        report = await self.fulfillment.run(self.db, t.order)
        async with self.db.begin():
            order = await ledger.require_order(self.db, reference)
        return CheckoutSettled(order=order, newly_settled=True, report=report)
