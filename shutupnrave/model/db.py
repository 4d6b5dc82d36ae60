from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
    UniqueConstraint,
)

from ..helpers import new_id, now_ts


Base = declarative_base()

# Order.status
ORDER_PENDING = "PENDING"
ORDER_CONFIRMED = "CONFIRMED"
ORDER_CANCELLED = "CANCELLED"
ORDER_REFUNDED = "REFUNDED"

# Order.payment_status
PAYMENT_PENDING = "PENDING"
PAYMENT_PAID = "PAID"
PAYMENT_FAILED = "FAILED"

# AffiliateCommissionRule.commission_type
COMMISSION_PERCENTAGE = "PERCENTAGE"
COMMISSION_FIXED_AMOUNT = "FIXED_AMOUNT"


# ----------------------------
# ORM models
# ----------------------------
class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True, default=new_id)
    full_name = Column(String, nullable=False)
    phone_number = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, unique=True)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts, onupdate=now_ts)


class TicketType(Base):
    __tablename__ = "ticket_types"
    id = Column(String, primary_key=True, default=new_id)
    # lookup key; price never changes once the row exists
    name = Column(String, nullable=False, unique=True)
    price = Column(Integer, nullable=False)  # kobo
    description = Column(String, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)


class Discount(Base):
    __tablename__ = "discounts"
    id = Column(String, primary_key=True, default=new_id)
    code = Column(String, nullable=False, unique=True)  # uppercase
    percentage = Column(Float, nullable=False)  # 0 < p <= 1
    is_active = Column(Boolean, nullable=False, default=True)
    usage_count = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts, onupdate=now_ts)


class Affiliate(Base):
    __tablename__ = "affiliates"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False,
                     unique=True)
    ref_code = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default="ACTIVE")
    password_hash = Column(String, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)

    user = relationship("User", lazy="selectin")
    rules = relationship("AffiliateCommissionRule", lazy="selectin",
                         cascade="all, delete-orphan")


class AffiliateCommissionRule(Base):
    __tablename__ = "affiliate_commission_rules"
    __table_args__ = (UniqueConstraint("affiliate_id", "ticket_type_id"),)
    id = Column(String, primary_key=True, default=new_id)
    affiliate_id = Column(String, ForeignKey("affiliates.id"),
                          nullable=False)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    # PERCENTAGE (rate of line total) | FIXED_AMOUNT (kobo per ticket)
    commission_type = Column(String, nullable=False)
    rate = Column(Float, nullable=True)
    amount = Column(Integer, nullable=True)

    ticket_type = relationship("TicketType", lazy="selectin")


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True, default=new_id)
    # ORD-YYYY-XXXXXX; also the gateway payment reference
    order_id = Column(String, nullable=False, unique=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)

    # PENDING | CONFIRMED | CANCELLED | REFUNDED
    status = Column(String, nullable=False, default=ORDER_PENDING)
    # PENDING | PAID | FAILED
    payment_status = Column(String, nullable=False, default=PAYMENT_PENDING)
    is_active = Column(Boolean, nullable=False, default=True)

    subtotal = Column(Integer, nullable=False)  # kobo
    discount_id = Column(String, ForeignKey("discounts.id",
                                            ondelete="SET NULL"),
                         nullable=True)
    discount_code = Column(String, nullable=True)
    discount_rate = Column(Float, nullable=True)
    discount_amount = Column(Integer, nullable=False, default=0)
    processing_fee = Column(Integer, nullable=False)
    total = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="NGN")

    # hosted URL or inline data: URL, only ever set on PAID orders
    qr_code_url = Column(Text, nullable=True)

    event_name = Column(String, nullable=False)
    event_date = Column(String, nullable=False)
    event_time = Column(String, nullable=False)
    event_location = Column(String, nullable=False)

    affiliate_id = Column(String, ForeignKey("affiliates.id"), nullable=True)

    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts, onupdate=now_ts)
    paid_at = Column(Float, nullable=True)

    user = relationship("User", lazy="selectin")
    items = relationship("OrderItem", lazy="selectin",
                         cascade="all, delete-orphan",
                         order_by="OrderItem.created_at")
    affiliate = relationship("Affiliate", lazy="selectin")


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    total_price = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False, default=now_ts)

    ticket_type = relationship("TicketType", lazy="selectin")


class AffiliateCommission(Base):
    __tablename__ = "affiliate_commissions"
    # at most one commission per (affiliate, order item)
    __table_args__ = (UniqueConstraint("affiliate_id", "order_item_id"),)
    id = Column(String, primary_key=True, default=new_id)
    affiliate_id = Column(String, ForeignKey("affiliates.id"),
                          nullable=False)
    order_item_id = Column(String, ForeignKey("order_items.id"),
                           nullable=False)
    ticket_type_id = Column(String, ForeignKey("ticket_types.id"),
                            nullable=False)
    commission_amount = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False, default=now_ts)


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    idempotency_key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False, default=now_ts)
