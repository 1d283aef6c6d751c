"""
Payment orchestrator: charges, confirmations, refunds, webhooks, hold expiry.

Every outbound gateway call happens after the preceding status change has
been committed, so no database transaction or row lock is open while the
gateway is on the wire. Whatever the gateway answers, the order ends in a
recorded state: CONFIRMED, PROCESSING (awaiting customer action) or
PAYMENT_FAILED, each with its audit row.

Confirmation arrives twice for most payments (the client's synchronous
confirm call and the `payment_intent.succeeded` webhook). Both paths go
through the ledger's compare-and-swap, and the second one is a no-op.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ticketflow.core.clock import Clock, utcnow
from ticketflow.core.exceptions import (
    AlreadyFinalized,
    InvalidSignature,
    InvalidState,
    NotFound,
    UpstreamFailure,
    ValidationFailed,
)
from ticketflow.core.logging import get_logger
from ticketflow.core.metrics import record_payment_attempt, record_webhook_event
from ticketflow.models.order import (
    REFUNDABLE_STATUSES,
    REQUIRES_ACTION,
    TERMINAL_STATUSES,
    Order,
    OrderItemStatus,
    PaymentStatus,
    PaymentTransaction,
)
from ticketflow.services.interfaces.payment_gateway import (
    GatewayOutcome,
    GatewayResult,
    PaymentGateway,
    WebhookEvent,
)
from ticketflow.services.order_ledger import OrderLedger

logger = get_logger(__name__)

# Statuses at or past a successful charge; confirming them again changes nothing
SETTLED_STATUSES = frozenset({
    PaymentStatus.CONFIRMED,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
})


@dataclass
class PaymentResult:
    order_id: int
    status: str
    amount: Decimal
    currency: str
    transaction_id: Optional[int] = None
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    requires_action: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    decline_code: Optional[str] = None
    retryable: bool = False


def _result_from_transaction(
    order: Order,
    transaction: Optional[PaymentTransaction],
    status: Optional[str] = None,
) -> PaymentResult:
    if transaction is None:
        return PaymentResult(
            order_id=order.id,
            status=status or order.payment_status,
            amount=order.total_amount,
            currency=order.currency,
        )
    return PaymentResult(
        order_id=order.id,
        status=status or transaction.status,
        amount=transaction.amount,
        currency=transaction.currency,
        transaction_id=transaction.id,
        payment_intent_id=transaction.payment_intent_id,
        error_code=transaction.error_code,
        error_message=transaction.error_message,
        decline_code=transaction.decline_code,
    )


def _latest(order: Order, status: Optional[str] = None, with_intent: bool = False) -> Optional[PaymentTransaction]:
    for transaction in reversed(order.transactions):
        if status is not None and transaction.status != status:
            continue
        if with_intent and not transaction.payment_intent_id:
            continue
        return transaction
    return None


def _gateway_audit(result: GatewayResult, payment_method: Optional[str] = None) -> dict:
    return {
        "payment_intent_id": result.payment_intent_id,
        "gateway_transaction_id": result.transaction_id,
        "payment_method": payment_method[:50] if payment_method else None,
        "gateway_response": result.raw,
        "error_code": result.error_code,
        "error_message": result.error_message,
        "decline_code": result.decline_code,
    }


class PaymentOrchestrator:
    def __init__(
        self,
        db: AsyncSession,
        *,
        ledger: OrderLedger,
        gateway: PaymentGateway,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.ledger = ledger
        self.gateway = gateway
        self.clock = clock

    # ── Charges ───────────────────────────────────────────────────────

    async def process_payment(
        self,
        order_id: int,
        payment_method_id: str,
        *,
        user_id: Optional[int] = None,
        customer_email: Optional[str] = None,
    ) -> PaymentResult:
        """
        Charge an order.

        PENDING and PAYMENT_FAILED orders move to PROCESSING before the
        gateway is called. The gateway outcome then decides the next state:
        success confirms, a customer-authentication step leaves the order in
        PROCESSING and returns the client secret, a decline or error marks
        the order PAYMENT_FAILED. Failed payments are not retried here.
        """
        order = await self.ledger.get_order(order_id, user_id)
        status = order.status
        if status in TERMINAL_STATUSES or status in SETTLED_STATUSES:
            raise AlreadyFinalized(f"Order {order.order_number} is already {status.value}")
        if status == PaymentStatus.PROCESSING:
            raise InvalidState(f"Payment for order {order.order_number} is already in progress")
        if order.expires_at is not None and self.clock() >= order.expires_at:
            raise InvalidState(f"Reservation hold for order {order.order_number} has expired")

        started = await self.ledger.transition_status(
            order.id,
            PaymentStatus.PROCESSING,
            values={"payment_method": payment_method_id[:50]},
            audit={"payment_method": payment_method_id[:50]},
        )
        if not started.changed:
            raise InvalidState(f"Payment for order {order.order_number} is already in progress")
        order = started.order

        logger.info("payment_started", order_id=order.id, amount=str(order.total_amount))
        result = await self._charge(order, payment_method_id, customer_email)
        record_payment_attempt(result.outcome.value)

        if result.outcome == GatewayOutcome.SUCCEEDED:
            return await self._confirm(order.id, result, payment_method_id)

        if result.outcome == GatewayOutcome.REQUIRES_ACTION:
            transaction = self.ledger.record_transaction(
                order, REQUIRES_ACTION, **_gateway_audit(result, payment_method_id)
            )
            await self.db.commit()
            logger.info("payment_requires_action", order_id=order.id, payment_intent_id=result.payment_intent_id)
            response = _result_from_transaction(order, transaction, status=PaymentStatus.PROCESSING.value)
            response.client_secret = result.client_secret
            response.requires_action = True
            return response

        failed = await self.ledger.transition_status(
            order.id,
            PaymentStatus.PAYMENT_FAILED,
            audit=_gateway_audit(result, payment_method_id),
        )
        logger.warning(
            "payment_failed",
            order_id=order.id,
            outcome=result.outcome.value,
            error_code=result.error_code,
            decline_code=result.decline_code,
        )
        if result.outcome == GatewayOutcome.ERROR:
            raise UpstreamFailure(
                result.error_message or "Payment gateway error",
                retryable=result.retryable,
            )
        response = _result_from_transaction(failed.order, failed.transaction)
        response.retryable = result.retryable
        return response

    async def _charge(self, order: Order, payment_method_id: str, customer_email: Optional[str]) -> GatewayResult:
        try:
            return await self.gateway.create_charge(
                amount=order.total_amount,
                currency=order.currency,
                payment_method_id=payment_method_id,
                idempotency_key=f"order-{order.id}-v{order.version}",
                description=f"Order {order.order_number}",
                customer_email=customer_email,
                metadata={"order_id": str(order.id), "order_number": order.order_number},
            )
        except Exception as e:
            # The order is already PROCESSING; it must still end in a recorded state
            logger.error("gateway_unexpected_error", order_id=order.id, error=str(e), exc_info=True)
            return GatewayResult(
                outcome=GatewayOutcome.ERROR,
                error_code="gateway_unavailable",
                error_message="Payment gateway unavailable",
                retryable=True,
            )

    async def _confirm(
        self,
        order_id: int,
        result: GatewayResult,
        payment_method: Optional[str] = None,
    ) -> PaymentResult:
        transition = await self.ledger.transition_status(
            order_id,
            PaymentStatus.CONFIRMED,
            audit=_gateway_audit(result, payment_method),
        )
        if transition.changed:
            logger.info("payment_confirmed", order_id=order_id, payment_intent_id=result.payment_intent_id)
            return _result_from_transaction(transition.order, transition.transaction)

        logger.info("payment_already_confirmed", order_id=order_id, payment_intent_id=result.payment_intent_id)
        order = transition.order
        return _result_from_transaction(order, _latest(order, PaymentStatus.CONFIRMED.value))

    async def confirm_payment(self, payment_intent_id: str, *, user_id: Optional[int] = None) -> PaymentResult:
        """
        Finalize a charge after client-side authentication.

        Idempotent: an order that is already confirmed is returned unchanged
        and no second CONFIRMED row is written. A declined intent only fails
        the order while it is still the current attempt.
        """
        order = await self.ledger.find_by_payment_intent(payment_intent_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise NotFound(f"No order found for payment intent {payment_intent_id}")

        if order.status in SETTLED_STATUSES:
            logger.info("payment_already_confirmed", order_id=order.id, payment_intent_id=payment_intent_id)
            return _result_from_transaction(order, _latest(order, PaymentStatus.CONFIRMED.value))

        result = await self.gateway.retrieve_charge(payment_intent_id)
        if result.outcome == GatewayOutcome.SUCCEEDED:
            return await self._confirm(order.id, result, order.payment_method)

        if result.outcome == GatewayOutcome.REQUIRES_ACTION:
            response = _result_from_transaction(order, _latest(order, REQUIRES_ACTION))
            response.status = order.payment_status
            response.client_secret = result.client_secret
            response.requires_action = True
            return response

        if result.outcome == GatewayOutcome.ERROR:
            raise UpstreamFailure(result.error_message or "Payment gateway error", retryable=result.retryable)

        failed = await self.ledger.transition_status(
            order.id,
            PaymentStatus.PAYMENT_FAILED,
            audit=_gateway_audit(result, order.payment_method),
            attempt_intent=payment_intent_id,
        )
        return _result_from_transaction(failed.order, failed.transaction or _latest(failed.order))

    # ── Refunds ───────────────────────────────────────────────────────

    async def refund_payment(
        self,
        order_id: int,
        reason: str,
        *,
        item_ids: Optional[list[int]] = None,
        user_id: Optional[int] = None,
    ) -> PaymentResult:
        """
        Refund a confirmed order, fully or for a subset of its items.

        A partial refund marks the chosen items refunded, recomputes the
        order amounts over the items still active and refunds the
        difference. Refunding every remaining item is a full refund and
        keeps the amounts as billed. If the gateway refuses, nothing changes.
        """
        order = await self.ledger.get_order(order_id, user_id)
        if order.status not in REFUNDABLE_STATUSES:
            raise InvalidState(f"Order in status {order.payment_status} cannot be refunded")

        charge = _latest(order, PaymentStatus.CONFIRMED.value, with_intent=True)
        if charge is None:
            raise InvalidState(f"Order {order.order_number} has no captured payment to refund")

        active = order.active_items()
        remaining = []
        refunded_ids = None
        if item_ids:
            requested = set(item_ids)
            unknown = requested - {item.id for item in active}
            if unknown:
                raise ValidationFailed(
                    f"Items not refundable: {sorted(unknown)}",
                    reason="invalid_data",
                )
            remaining = [item for item in active if item.id not in requested]
            refunded_ids = sorted(requested)

        if remaining:
            target = PaymentStatus.PARTIALLY_REFUNDED
            new_totals = self.ledger.totals_for(remaining)
            values = new_totals.as_values()
            refund_amount = Decimal(order.total_amount) - new_totals.total_amount
        else:
            target = PaymentStatus.REFUNDED
            values = None
            refund_amount = Decimal(order.total_amount)

        if refund_amount <= 0:
            raise ValidationFailed("Nothing to refund for the selected items", reason="invalid_data")

        result = await self.gateway.create_refund(
            payment_intent_id=charge.payment_intent_id,
            amount=refund_amount,
            currency=order.currency,
            reason=reason,
            idempotency_key=f"refund-{order.id}-v{order.version}",
        )
        if not result.succeeded:
            logger.warning(
                "refund_failed",
                order_id=order.id,
                error_code=result.error_code,
                retryable=result.retryable,
            )
            raise UpstreamFailure(result.error_message or "Refund failed", retryable=result.retryable)

        await self.ledger.set_item_status(order.id, OrderItemStatus.REFUNDED, refunded_ids)
        audit = _gateway_audit(result)
        audit["amount"] = refund_amount
        transition = await self.ledger.transition_status(order.id, target, values=values, audit=audit)

        logger.info(
            "payment_refunded",
            order_id=order.id,
            status=target.value,
            amount=str(refund_amount),
            reason=reason,
        )
        return _result_from_transaction(transition.order, transition.transaction)

    # ── Queries ───────────────────────────────────────────────────────

    async def get_payment_status(self, transaction_id: int, *, user_id: Optional[int] = None) -> PaymentResult:
        transaction = await self.ledger.get_transaction(transaction_id)
        order = await self.ledger.get_order(transaction.order_id, user_id)
        return _result_from_transaction(order, transaction)

    # ── Webhooks ──────────────────────────────────────────────────────

    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Verify and apply one gateway event.

        Unverifiable payloads raise InvalidSignature before any lookup.
        Events for unknown orders and unrecognized kinds are acknowledged and
        ignored; every handler tolerates redelivery of the same event.
        """
        try:
            event = self.gateway.parse_webhook(payload, signature)
        except InvalidSignature:
            record_webhook_event("unknown", "rejected")
            raise

        logger.info("webhook_received", event_id=event.id, event_type=event.type)
        handlers = {
            "payment_intent.succeeded": self._on_intent_succeeded,
            "payment_intent.payment_failed": self._on_intent_failed,
            "payment_intent.canceled": self._on_intent_failed,
            "charge.refunded": self._on_charge_refunded,
        }
        handler = handlers.get(event.type)
        if handler is None:
            record_webhook_event(event.type, "ignored")
            logger.debug("webhook_ignored", event_type=event.type)
            return {"received": True, "handled": False}

        order = None
        if event.payment_intent_id:
            order = await self.ledger.find_by_payment_intent(event.payment_intent_id)
        if order is None:
            record_webhook_event(event.type, "ignored")
            logger.warning("webhook_order_not_found", event_type=event.type, payment_intent_id=event.payment_intent_id)
            return {"received": True, "handled": False}

        try:
            await handler(order, event)
        except InvalidState as e:
            # Out-of-order delivery for an order that has moved on
            record_webhook_event(event.type, "ignored")
            logger.warning("webhook_transition_rejected", order_id=order.id, event_type=event.type, error=e.message)
            return {"received": True, "handled": False}

        record_webhook_event(event.type, "handled")
        return {"received": True, "handled": True}

    async def _on_intent_succeeded(self, order: Order, event: WebhookEvent) -> None:
        if order.status in SETTLED_STATUSES:
            return
        result = GatewayResult(
            outcome=GatewayOutcome.SUCCEEDED,
            payment_intent_id=event.payment_intent_id,
            gateway_status=event.data.get("status"),
            raw=f"webhook:{event.id}",
        )
        await self._confirm(order.id, result, order.payment_method)

    async def _on_intent_failed(self, order: Order, event: WebhookEvent) -> None:
        await self.ledger.transition_status(
            order.id,
            PaymentStatus.PAYMENT_FAILED,
            audit={
                "payment_intent_id": event.payment_intent_id,
                "payment_method": order.payment_method,
                "gateway_response": f"webhook:{event.id}",
                "error_code": event.error_code or event.type,
                "error_message": event.error_message,
                "decline_code": event.decline_code,
            },
            attempt_intent=event.payment_intent_id,
        )

    async def _on_charge_refunded(self, order: Order, event: WebhookEvent) -> None:
        # Partial refunds are recorded when they are requested through refund_payment
        if not event.fully_refunded:
            return
        await self.ledger.set_item_status(order.id, OrderItemStatus.REFUNDED)
        await self.ledger.transition_status(
            order.id,
            PaymentStatus.REFUNDED,
            audit={
                "payment_intent_id": event.payment_intent_id,
                "gateway_transaction_id": event.data.get("id"),
                "gateway_response": f"webhook:{event.id}",
                "amount": (Decimal(event.data.get("amount_refunded") or 0) / 100).quantize(Decimal("0.01")),
            },
        )

    # ── Hold expiry ───────────────────────────────────────────────────

    async def expire_stale_orders(self) -> int:
        """
        Cancel PENDING/PROCESSING orders whose reservation hold has elapsed.

        An in-flight gateway charge is cancelled first; if that fails the
        order is left for the next sweep rather than cancelled while money
        may still move.
        """
        now = self.clock()
        cancelled = 0
        for order in await self.ledger.find_expired(now):
            pending_charge = _latest(order, with_intent=True)
            if order.status == PaymentStatus.PROCESSING and pending_charge is not None:
                result = await self.gateway.cancel_charge(pending_charge.payment_intent_id)
                if not result.succeeded:
                    logger.warning(
                        "order_expiry_deferred",
                        order_id=order.id,
                        payment_intent_id=pending_charge.payment_intent_id,
                        error_code=result.error_code,
                    )
                    continue

            await self.ledger.set_item_status(order.id, OrderItemStatus.CANCELLED)
            try:
                transition = await self.ledger.transition_status(
                    order.id,
                    PaymentStatus.CANCELLED,
                    audit={
                        "payment_intent_id": pending_charge.payment_intent_id if pending_charge else None,
                        "error_message": "Reservation hold expired",
                    },
                )
            except InvalidState:
                await self.db.rollback()
                logger.info("order_expiry_skipped", order_id=order.id)
                continue
            if transition.changed:
                cancelled += 1

        logger.info("stale_orders_expired", count=cancelled)
        return cancelled
