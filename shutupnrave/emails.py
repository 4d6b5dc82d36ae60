"""Email bodies: one typed props object in, one HTML string out."""

from __future__ import annotations
import os
from dataclasses import asdict, dataclass
from typing import List, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .helpers import format_naira

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates", "emails")

SUBJECT_ORDER_CONFIRMATION = "🎉 Your shutupnraveee 2025 Tickets Are Here!"
SUBJECT_AFFILIATE_WELCOME = "Your ShutUpNRave Affiliate Link"
SUBJECT_AFFILIATE_SALE = "You earned a commission from order {order_id}"
SUBJECT_ADMIN_ORDER = "New ticket order {order_id}"

_env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html"]),
)
_env.filters["naira"] = format_naira


@dataclass(frozen=True)
class TicketLine:
    name: str
    quantity: int
    unit_price: int
    total_price: int


@dataclass(frozen=True)
class OrderConfirmationProps:
    customer_name: str
    order_id: str
    items: List[TicketLine]
    subtotal: int
    processing_fee: int
    total: int
    event_name: str
    event_date: str
    event_time: str
    event_location: str
    qr_code_url: str
    discount_code: Optional[str] = None
    discount_amount: int = 0


@dataclass(frozen=True)
class AffiliateWelcomeProps:
    app_url: str
    full_name: str
    email: str
    ref_code: str
    link: str
    temporary_password: Optional[str] = None


@dataclass(frozen=True)
class AffiliateSaleProps:
    app_url: str
    full_name: str
    ref_code: str
    order_id: str
    items: List[TicketLine]
    subtotal: int
    commission_amount: int


@dataclass(frozen=True)
class AdminOrderProps:
    app_url: str
    order_id: str
    customer_name: str
    customer_email: str
    customer_phone: str
    items: List[TicketLine]
    subtotal: int
    processing_fee: int
    total: int
    discount_code: Optional[str] = None
    discount_amount: int = 0
    affiliate_ref_code: Optional[str] = None


def _render(template: str, props) -> str:
    return _env.get_template(template).render(**asdict(props))


def render_order_confirmation(props: OrderConfirmationProps) -> str:
    return _render("order_confirmation.html", props)


def render_affiliate_welcome(props: AffiliateWelcomeProps) -> str:
    return _render("affiliate_welcome.html", props)


def render_affiliate_sale(props: AffiliateSaleProps) -> str:
    return _render("affiliate_sale.html", props)


def render_admin_order(props: AdminOrderProps) -> str:
    return _render("admin_order.html", props)


def ticket_lines(order) -> List[TicketLine]:
    return [
        TicketLine(
            name=item.ticket_type.name,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total_price=item.total_price,
        )
        for item in order.items
    ]
