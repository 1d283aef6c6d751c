"""
Order ledger: creation, pricing and concurrency-safe status transitions.

CONCURRENCY STRATEGY: Optimistic Locking with Retry
====================================================

Problem:
  The synchronous confirm call and the gateway webhook race for the same
  order. Both read PROCESSING, both write CONFIRMED, and the audit trail ends
  up with two CONFIRMED rows. Worse, a stale reader can overwrite a newer
  status (e.g. flip CANCELLED back to CONFIRMED).

Solution:
  Every status change is a compare-and-swap on the `version` column:

  1. Read the order and its current version
  2. Check the transition is legal from the status just read
  3. UPDATE orders SET payment_status = :target, version = version + 1
     WHERE id = :order_id AND version = :current_version
  4. If rows_affected == 0, someone else moved the order -> reload, re-check
     legality against the NEW status, retry

  Re-checking on retry is what makes confirmation idempotent: the loser of
  the race reloads, sees CONFIRMED, and returns without writing anything.

  No row lock is held between the read and the write, and none is held
  while the gateway is called: callers commit before any outbound call.

Audit trail:
  Each successful CAS appends one PaymentTransaction row in the same
  transaction. Rows are never updated after insert.
"""

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.core.clock import Clock, utcnow
from ticketflow.core.config import Settings
from ticketflow.core.exceptions import Conflict, InvalidState, NotFound, ValidationFailed
from ticketflow.core.logging import get_logger
from ticketflow.core.metrics import order_transition_retries
from ticketflow.models.order import (
    ALLOWED_TRANSITIONS,
    Order,
    OrderItem,
    OrderItemStatus,
    PaymentStatus,
    PaymentTransaction,
)

logger = get_logger(__name__)

CENT = Decimal("0.01")
ORDER_NUMBER_ATTEMPTS = 5


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LineItem:
    ticket_type_id: int
    quantity: int
    unit_price: Decimal


@dataclass
class PricedItem:
    ticket_type_id: int
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    fees: Decimal

    @property
    def total_price(self) -> Decimal:
        return self.subtotal + self.fees


@dataclass
class OrderTotals:
    subtotal_amount: Decimal
    service_fee: Decimal
    tax_amount: Decimal
    items: list[PricedItem] = field(default_factory=list)

    @property
    def total_amount(self) -> Decimal:
        return self.subtotal_amount + self.service_fee + self.tax_amount

    def as_values(self) -> dict:
        return {
            "subtotal_amount": self.subtotal_amount,
            "service_fee": self.service_fee,
            "tax_amount": self.tax_amount,
            "total_amount": self.total_amount,
        }


def summarize(subtotals: Iterable[Decimal], fees: Iterable[Decimal], tax_rate: Decimal) -> OrderTotals:
    subtotal = sum(subtotals, Decimal("0.00"))
    fee_total = sum(fees, Decimal("0.00"))
    return OrderTotals(
        subtotal_amount=money(subtotal),
        service_fee=money(fee_total),
        tax_amount=money((subtotal + fee_total) * tax_rate),
    )


def price_items(items: list[LineItem], fee_rate: Decimal, tax_rate: Decimal) -> OrderTotals:
    """
    Price line items. Every amount is rounded half-up to cents before it is
    summed, so subtotal + fees + tax equals the total exactly.
    """
    priced = []
    for item in items:
        subtotal = money(Decimal(item.unit_price) * item.quantity)
        priced.append(
            PricedItem(
                ticket_type_id=item.ticket_type_id,
                quantity=item.quantity,
                unit_price=money(item.unit_price),
                subtotal=subtotal,
                fees=money(subtotal * fee_rate),
            )
        )
    totals = summarize([p.subtotal for p in priced], [p.fees for p in priced], tax_rate)
    totals.items = priced
    return totals


def generate_order_number(now: datetime) -> str:
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"



def current_payment_intent(order: Order) -> Optional[str]:
    """
    Intent of the order's latest charge attempt.

    None while a new attempt has started (PROCESSING row written) but the
    gateway has not yet answered with an intent.
    """
    for transaction in reversed(order.transactions):
        if transaction.payment_intent_id:
            return transaction.payment_intent_id
        if transaction.status == PaymentStatus.PROCESSING.value:
            return None
    return None


@dataclass
class TransitionResult:
    order: Order
    changed: bool
    transaction: Optional[PaymentTransaction] = None


class OrderLedger:
    def __init__(self, db: AsyncSession, *, settings: Settings, clock: Clock = utcnow):
        self.db = db
        self.clock = clock
        self._fee_rate = settings.SERVICE_FEE_RATE
        self._tax_rate = settings.TAX_RATE
        self._currency = settings.DEFAULT_CURRENCY
        self._hold = timedelta(minutes=settings.ORDER_HOLD_MINUTES)
        self._max_retry_attempts = settings.ORDER_MAX_RETRY_ATTEMPTS

    # ── Creation ──────────────────────────────────────────────────────

    async def create_order(
        self,
        user_id: int,
        *,
        event_id: int,
        items: list[LineItem],
        reservation_id: Optional[str] = None,
    ) -> Order:
        if not items:
            raise ValidationFailed("Order must contain at least one item", reason="invalid_data")
        for item in items:
            if item.quantity is None or item.quantity <= 0:
                raise ValidationFailed("Item quantity must be greater than zero", reason="invalid_data")
            if Decimal(item.unit_price) < 0:
                raise ValidationFailed("Item price must not be negative", reason="invalid_data")

        now = self.clock()
        totals = price_items(items, self._fee_rate, self._tax_rate)
        order_number = await self._unique_order_number(now)

        order = Order(
            user_id=user_id,
            event_id=event_id,
            order_number=order_number,
            payment_status=PaymentStatus.PENDING.value,
            currency=self._currency,
            reservation_id=reservation_id,
            expires_at=now + self._hold,
            version=1,
            created_at=now,
            updated_at=now,
            **totals.as_values(),
        )
        self.db.add(order)
        await self.db.flush()

        for priced in totals.items:
            self.db.add(
                OrderItem(
                    order_id=order.id,
                    ticket_type_id=priced.ticket_type_id,
                    quantity=priced.quantity,
                    unit_price=priced.unit_price,
                    subtotal=priced.subtotal,
                    fees=priced.fees,
                    total_price=priced.total_price,
                    status=OrderItemStatus.ACTIVE.value,
                    created_at=now,
                )
            )
        await self.db.commit()

        logger.info(
            "order_created",
            order_id=order.id,
            order_number=order_number,
            user_id=user_id,
            event_id=event_id,
            total=str(totals.total_amount),
        )
        return await self.load(order.id)

    async def _unique_order_number(self, now: datetime) -> str:
        for _ in range(ORDER_NUMBER_ATTEMPTS):
            candidate = generate_order_number(now)
            if await self.find_by_order_number(candidate) is None:
                return candidate
        raise Conflict("Could not allocate an order number. Please try again.", retryable=True)

    # ── Queries ───────────────────────────────────────────────────────

    async def load(self, order_id: int) -> Optional[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_order(self, order_id: int, user_id: Optional[int] = None) -> Order:
        """Load an order, scoped to its owner when user_id is given."""
        order = await self.load(order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise NotFound(f"Order {order_id} not found")
        return order

    async def list_user_orders(self, user_id: int, limit: int = 50, offset: int = 0) -> list[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.user_id == user_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def find_by_order_number(self, order_number: str) -> Optional[Order]:
        result = await self.db.execute(select(Order).where(Order.order_number == order_number))
        return result.scalar_one_or_none()

    async def find_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        result = await self.db.execute(
            select(Order)
            .join(PaymentTransaction, PaymentTransaction.order_id == Order.id)
            .where(PaymentTransaction.payment_intent_id == payment_intent_id)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_transaction(self, transaction_id: int) -> PaymentTransaction:
        result = await self.db.execute(
            select(PaymentTransaction).where(PaymentTransaction.id == transaction_id)
        )
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise NotFound(f"Transaction {transaction_id} not found")
        return transaction

    async def find_expired(self, now: Optional[datetime] = None) -> list[Order]:
        now = now or self.clock()
        result = await self.db.execute(
            select(Order)
            .where(
                Order.payment_status.in_([PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value]),
                Order.expires_at.is_not(None),
                Order.expires_at <= now,
            )
            .order_by(Order.expires_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # ── Audit trail ───────────────────────────────────────────────────

    def record_transaction(self, order: Order, status: str, **fields) -> PaymentTransaction:
        """Append an audit row. Not committed here; the caller's commit carries it."""
        fields.setdefault("amount", order.total_amount)
        fields.setdefault("currency", order.currency)
        transaction = PaymentTransaction(
            order_id=order.id,
            status=status,
            created_at=self.clock(),
            **fields,
        )
        self.db.add(transaction)
        return transaction

    # ── Items ─────────────────────────────────────────────────────────

    async def set_item_status(
        self,
        order_id: int,
        status: OrderItemStatus,
        item_ids: Optional[list[int]] = None,
    ) -> None:
        """Move active items (all, or the given ids) to a new status. Not committed here."""
        stmt = (
            update(OrderItem)
            .where(OrderItem.order_id == order_id, OrderItem.status == OrderItemStatus.ACTIVE.value)
            .values(status=status.value)
            .execution_options(synchronize_session=False)
        )
        if item_ids is not None:
            stmt = stmt.where(OrderItem.id.in_(item_ids))
        await self.db.execute(stmt)

    def totals_for(self, items: list[OrderItem]) -> OrderTotals:
        """Re-derive order amounts from the billed item amounts."""
        return summarize(
            [Decimal(item.subtotal) for item in items],
            [Decimal(item.fees) for item in items],
            self._tax_rate,
        )

    # ── Transitions ───────────────────────────────────────────────────

    async def transition_status(
        self,
        order_id: int,
        target: PaymentStatus,
        *,
        values: Optional[dict] = None,
        audit: Optional[dict] = None,
        attempt_intent: Optional[str] = None,
    ) -> TransitionResult:
        """
        Compare-and-swap the order to `target` and append one audit row.

        A repeated transition to a status that cannot follow itself (e.g.
        CONFIRMED -> CONFIRMED) is a no-op returning changed=False. Any other
        illegal transition raises InvalidState. Version conflicts are retried
        up to ORDER_MAX_RETRY_ATTEMPTS times.

        With `attempt_intent`, the transition only applies while that intent
        is still the order's current charge attempt; outcomes of superseded
        attempts raise InvalidState.

        Pending changes already in the session (item updates) are committed
        together with the status change.
        """
        for attempt in range(1, self._max_retry_attempts + 1):
            order = await self.load(order_id)
            if order is None:
                raise NotFound(f"Order {order_id} not found")

            current = order.status
            if current == target and target not in ALLOWED_TRANSITIONS[current]:
                logger.info("order_transition_noop", order_id=order_id, status=current.value)
                return TransitionResult(order=order, changed=False)

            if target not in ALLOWED_TRANSITIONS[current]:
                logger.warning(
                    "order_transition_rejected",
                    order_id=order_id,
                    current=current.value,
                    target=target.value,
                )
                raise InvalidState(f"Cannot move order from {current.value} to {target.value}")

            if attempt_intent is not None and current_payment_intent(order) != attempt_intent:
                logger.warning(
                    "order_transition_superseded",
                    order_id=order_id,
                    payment_intent_id=attempt_intent,
                    target=target.value,
                )
                raise InvalidState(f"Payment intent {attempt_intent} is not the current attempt for order {order_id}")

            current_version = order.version
            update_result = await self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.version == current_version)
                .values(
                    payment_status=target.value,
                    version=Order.version + 1,
                    updated_at=self.clock(),
                    **(values or {}),
                )
                .execution_options(synchronize_session=False)
            )

            if update_result.rowcount == 0:
                order_transition_retries.inc()
                logger.info(
                    "order_transition_retry",
                    order_id=order_id,
                    attempt=attempt,
                    reason="version_conflict",
                )
                continue

            transaction = self.record_transaction(order, target.value, **(audit or {}))
            await self.db.commit()

            logger.info(
                "order_transition",
                order_id=order_id,
                from_status=current.value,
                to_status=target.value,
                version=current_version + 1,
                attempt=attempt,
            )
            return TransitionResult(order=await self.load(order_id), changed=True, transaction=transaction)

        raise Conflict("Order was modified concurrently. Please try again.", retryable=True)
