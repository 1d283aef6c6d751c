"""
Order, order items and the append-only payment audit trail.

Key design decisions:
- `payment_status` is a summary of the latest transition; the full history
  lives in `payment_transactions`, one row per transition or gateway attempt,
  never updated after insert
- `version` column enables optimistic locking: every status change is a
  compare-and-swap on (id, version), see services/order_ledger.py
- Money columns are NUMERIC(10, 2) and constrained non-negative
"""

import enum

from sqlalchemy import (
    Column, Integer, String, Text, Numeric, DateTime, ForeignKey, Index, CheckConstraint,
)
from sqlalchemy.orm import relationship

from ticketflow.core.clock import utcnow
from ticketflow.db.base import Base, TimestampMixin


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    CONFIRMED = "CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class OrderItemStatus(str, enum.Enum):
    ACTIVE = "active"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PROCESSING, PaymentStatus.CANCELLED}),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.CONFIRMED,
        PaymentStatus.PAYMENT_FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.PAYMENT_FAILED: frozenset({PaymentStatus.PROCESSING}),
    PaymentStatus.CONFIRMED: frozenset({PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED}),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset({
        PaymentStatus.PARTIALLY_REFUNDED,
        PaymentStatus.REFUNDED,
    }),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({PaymentStatus.REFUNDED, PaymentStatus.CANCELLED})
REFUNDABLE_STATUSES = frozenset({PaymentStatus.CONFIRMED, PaymentStatus.PARTIALLY_REFUNDED})

# Audit rows for gateway attempts that do not change the order status
REQUIRES_ACTION = "REQUIRES_ACTION"


def can_transition(current: str, target: str) -> bool:
    return PaymentStatus(target) in ALLOWED_TRANSITIONS[PaymentStatus(current)]


def _status_check(column: str, values) -> str:
    allowed = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({allowed})"


class Order(Base, TimestampMixin):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    event_id = Column(Integer, nullable=False, index=True)
    order_number = Column(String(50), unique=True, nullable=False)
    subtotal_amount = Column(Numeric(10, 2), nullable=False)
    service_fee = Column(Numeric(10, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False)
    payment_status = Column(String(30), nullable=False, default=PaymentStatus.PENDING.value)
    payment_method = Column(String(50), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    reservation_id = Column(String(64), nullable=True)
    expires_at = Column(DateTime, nullable=True)

    # Optimistic locking version counter
    version = Column(Integer, nullable=False, default=1)

    items = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )
    transactions = relationship(
        "PaymentTransaction",
        back_populates="order",
        lazy="selectin",
        order_by="PaymentTransaction.id",
    )

    __table_args__ = (
        CheckConstraint("subtotal_amount >= 0", name="check_order_subtotal_non_negative"),
        CheckConstraint("service_fee >= 0", name="check_order_fee_non_negative"),
        CheckConstraint("tax_amount >= 0", name="check_order_tax_non_negative"),
        CheckConstraint("total_amount >= 0", name="check_order_total_non_negative"),
        CheckConstraint(_status_check("payment_status", PaymentStatus), name="check_order_payment_status"),
        Index("ix_orders_status_expires", "payment_status", "expires_at"),
        Index("ix_orders_created_at", "created_at"),
    )

    @property
    def status(self) -> PaymentStatus:
        return PaymentStatus(self.payment_status)

    def active_items(self) -> list["OrderItem"]:
        return [item for item in self.items if item.status == OrderItemStatus.ACTIVE.value]

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, number={self.order_number}, status={self.payment_status}, v={self.version})>"


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    ticket_type_id = Column(Integer, nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)
    fees = Column(Numeric(10, 2), nullable=False, default=0)
    total_price = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default=OrderItemStatus.ACTIVE.value)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_item_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="check_item_unit_price_non_negative"),
        CheckConstraint(_status_check("status", OrderItemStatus), name="check_item_status"),
    )


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    gateway_transaction_id = Column(String(255), nullable=True, index=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(50), nullable=False, index=True)
    payment_method = Column(String(50), nullable=True)
    gateway_response = Column(Text, nullable=True)
    error_code = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    decline_code = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    order = relationship("Order", back_populates="transactions")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="check_transaction_amount_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<PaymentTransaction(id={self.id}, order={self.order_id}, status={self.status})>"
