"""Post-settlement side effects.

Runs once per order, right after the ledger flipped it to PAID. Money has
already moved at this point, so no step may undo the settlement and no
step may stop the others: every step is attempted, failures are collected
into a `FulfillmentReport` and logged for manual follow-up (the admin can
resend the confirmation email later).

Steps, in order:
  1. render the verification QR (payload: <APP_URL>/admin-page/<order_id>)
  2. host it; on failure inline it as a data: URL
  3. store the image reference on the order
  4. email the customer
  5. record affiliate commissions and email the affiliate
  6. email the admin distribution list
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from . import emails
from .assets import AssetStore, is_data_url, render_qr_png, to_data_url
from .config import Settings
from .errors import AlreadyDeactivated, NotPaid
from .mailer import EmailMessage, Mailer
from .model import affiliates, ledger
from .model.db import Order, PAYMENT_PAID

logger = structlog.get_logger(__name__)

STEP_QR_RENDER = "qr_render"
STEP_QR_UPLOAD = "qr_upload"
STEP_QR_PERSIST = "qr_persist"
STEP_CUSTOMER_EMAIL = "customer_email"
STEP_COMMISSION = "affiliate_commission"
STEP_AFFILIATE_EMAIL = "affiliate_email"
STEP_ADMIN_EMAIL = "admin_email"


@dataclass(frozen=True)
class SideEffectFailure:
    step: str
    error: str


@dataclass
class FulfillmentReport:
    order_id: str
    qr_code_url: Optional[str] = None
    qr_hosted: bool = False
    emails_sent: List[str] = field(default_factory=list)
    commissions_recorded: int = 0
    commission_total: int = 0
    failures: List[SideEffectFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def failed_steps(self) -> List[str]:
        return [f.step for f in self.failures]


class FulfillmentPipeline:
    def __init__(self, *, settings: Settings, mailer: Mailer,
                 assets: AssetStore) -> None:
        self.settings = settings
        self.mailer = mailer
        self.assets = assets

    async def _attempt(self, report: FulfillmentReport, step: str,
                       fn: Callable[[], Awaitable[None]]) -> bool:
        try:
            await fn()
            return True
        except Exception as e:
            logger.error("fulfillment.step_failed", order_id=report.order_id,
                         step=step, error=repr(e), exc_info=True)
            report.failures.append(SideEffectFailure(step=step,
                                                     error=repr(e)))
            return False

    # ---
    # steps
    # ---
    async def _issue_qr(self, db: AsyncSession, order: Order,
                        report: FulfillmentReport) -> None:
        png: Optional[bytes] = None

        async def render():
            nonlocal png
            png = render_qr_png(self.settings.verification_url(order.order_id))

        if not await self._attempt(report, STEP_QR_RENDER, render):
            return

        async def upload():
            url = await self.assets.upload(png, order.order_id)
            report.qr_code_url = url
            report.qr_hosted = not is_data_url(url)

        if not await self._attempt(report, STEP_QR_UPLOAD, upload):
            # the email must still go out: inline the image instead
            logger.warning("fulfillment.qr_inlined", order_id=order.order_id)
            report.qr_code_url = to_data_url(png)
            report.qr_hosted = False

        async def persist():
            async with db.begin():
                await ledger.attach_qr_code(db, order.order_id,
                                            report.qr_code_url)

        await self._attempt(report, STEP_QR_PERSIST, persist)

    async def _send(self, report: FulfillmentReport, step: str,
                    build: Callable[[], EmailMessage]) -> None:
        # rendering counts as part of the step
        async def send():
            await self.mailer.send(build())
            report.emails_sent.append(step)

        await self._attempt(report, step, send)

    def confirmation_message(self, order: Order,
                             qr_code_url: Optional[str]) -> EmailMessage:
        html = emails.render_order_confirmation(emails.OrderConfirmationProps(
            customer_name=order.user.full_name,
            order_id=order.order_id,
            items=emails.ticket_lines(order),
            subtotal=order.subtotal,
            discount_code=order.discount_code,
            discount_amount=order.discount_amount,
            processing_fee=order.processing_fee,
            total=order.total,
            event_name=order.event_name,
            event_date=order.event_date,
            event_time=order.event_time,
            event_location=order.event_location,
            qr_code_url=qr_code_url or "",
        ))
        return EmailMessage(to=[order.user.email],
                            subject=emails.SUBJECT_ORDER_CONFIRMATION,
                            html=html)

    async def _credit_affiliate(self, db: AsyncSession, order: Order,
                                report: FulfillmentReport) -> None:
        affiliate = order.affiliate

        async def record():
            nonlocal affiliate
            async with db.begin():
                # rules may have changed since the order was placed
                affiliate = await affiliates.get_affiliate(db, affiliate.id)
                created = await affiliates.record_commissions(
                    db, affiliate, order
                )
            report.commissions_recorded = len(created)
            report.commission_total = sum(
                c.commission_amount for c in created
            )

        if not await self._attempt(report, STEP_COMMISSION, record):
            return
        if not report.commissions_recorded:
            return

        def message() -> EmailMessage:
            html = emails.render_affiliate_sale(emails.AffiliateSaleProps(
                app_url=self.settings.app_url,
                full_name=affiliate.user.full_name,
                ref_code=affiliate.ref_code,
                order_id=order.order_id,
                items=emails.ticket_lines(order),
                subtotal=order.subtotal,
                commission_amount=report.commission_total,
            ))
            return EmailMessage(
                to=[affiliate.user.email],
                subject=emails.SUBJECT_AFFILIATE_SALE.format(
                    order_id=order.order_id),
                html=html,
            )

        await self._send(report, STEP_AFFILIATE_EMAIL, message)

    def admin_message(self, order: Order) -> EmailMessage:
        html = emails.render_admin_order(emails.AdminOrderProps(
            app_url=self.settings.app_url,
            order_id=order.order_id,
            customer_name=order.user.full_name,
            customer_email=order.user.email,
            customer_phone=order.user.phone_number,
            items=emails.ticket_lines(order),
            subtotal=order.subtotal,
            discount_code=order.discount_code,
            discount_amount=order.discount_amount,
            processing_fee=order.processing_fee,
            total=order.total,
            affiliate_ref_code=(order.affiliate.ref_code
                                if order.affiliate is not None else None),
        ))
        return EmailMessage(
            to=list(self.settings.admin_notify_emails),
            subject=emails.SUBJECT_ADMIN_ORDER.format(order_id=order.order_id),
            html=html,
        )

    # ---
    # entry points
    # ---
    async def run(self, db: AsyncSession, order: Order) -> FulfillmentReport:
        """Execute every side effect for a freshly settled order."""
        if order.payment_status != PAYMENT_PAID:
            raise NotPaid()
        report = FulfillmentReport(order_id=order.order_id)

        await self._issue_qr(db, order, report)
        await self._send(
            report, STEP_CUSTOMER_EMAIL,
            lambda: self.confirmation_message(order, report.qr_code_url),
        )
        if order.affiliate is not None:
            await self._credit_affiliate(db, order, report)
        if self.settings.admin_notify_emails:
            await self._send(report, STEP_ADMIN_EMAIL,
                             lambda: self.admin_message(order))

        if report.ok:
            logger.info("fulfillment.completed", order_id=order.order_id,
                        emails=report.emails_sent,
                        commissions=report.commissions_recorded)
        else:
            logger.error("fulfillment.needs_reconciliation",
                         order_id=order.order_id,
                         failed_steps=report.failed_steps)
        return report

    async def resend_confirmation(
        self, db: AsyncSession, order: Order
    ) -> FulfillmentReport:
        """Send the customer email again, re-issuing the QR if it is missing."""
        if order.payment_status != PAYMENT_PAID:
            raise NotPaid()
        if not order.is_active:
            raise AlreadyDeactivated()
        report = FulfillmentReport(order_id=order.order_id,
                                   qr_code_url=order.qr_code_url)
        if not order.qr_code_url:
            await self._issue_qr(db, order, report)
        await self._send(
            report, STEP_CUSTOMER_EMAIL,
            lambda: self.confirmation_message(order, report.qr_code_url),
        )
        logger.info("fulfillment.confirmation_resent",
                    order_id=order.order_id, ok=report.ok)
        return report
