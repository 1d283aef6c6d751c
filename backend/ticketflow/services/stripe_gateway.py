"""
Stripe implementation of the payment gateway.

The stripe SDK is synchronous; every call runs in a worker thread so the
event loop is never blocked on the network. The API key is passed per call
instead of being set on the `stripe` module, so nothing global is mutated.
"""

import asyncio
import json
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import stripe

from ticketflow.core.exceptions import InvalidSignature
from ticketflow.core.logging import get_logger
from ticketflow.core.metrics import gateway_latency
from ticketflow.services.interfaces.payment_gateway import (
    GatewayOutcome,
    GatewayResult,
    PaymentGateway,
    WebhookEvent,
)

logger = get_logger(__name__)

# PaymentIntent statuses that leave the charge waiting on the customer or bank
PENDING_INTENT_STATUSES = {"requires_action", "requires_confirmation", "processing"}
FAILED_REFUND_STATUSES = {"failed", "canceled"}


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _intent_result(intent) -> GatewayResult:
    status = intent["status"]
    if status == "succeeded":
        outcome = GatewayOutcome.SUCCEEDED
    elif status in PENDING_INTENT_STATUSES:
        outcome = GatewayOutcome.REQUIRES_ACTION
    else:
        outcome = GatewayOutcome.DECLINED

    error = intent.get("last_payment_error") or {}
    return GatewayResult(
        outcome=outcome,
        payment_intent_id=intent["id"],
        transaction_id=intent.get("latest_charge") if isinstance(intent.get("latest_charge"), str) else None,
        client_secret=intent.get("client_secret"),
        gateway_status=status,
        error_code=error.get("code"),
        error_message=error.get("message"),
        decline_code=error.get("decline_code"),
        raw=str(intent),
    )


def _error_result(e: stripe.StripeError) -> GatewayResult:
    error = e.error
    intent = getattr(error, "payment_intent", None) if error else None

    if isinstance(e, stripe.CardError):
        return GatewayResult(
            outcome=GatewayOutcome.DECLINED,
            payment_intent_id=intent.get("id") if intent else None,
            error_code=e.code,
            error_message=e.user_message or str(e),
            decline_code=getattr(error, "decline_code", None) if error else None,
        )

    transient = isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError))
    return GatewayResult(
        outcome=GatewayOutcome.ERROR,
        payment_intent_id=intent.get("id") if intent else None,
        error_code=e.code or type(e).__name__,
        error_message=e.user_message or str(e),
        retryable=transient,
    )


class StripeGateway(PaymentGateway):
    def __init__(self, api_key: str, webhook_secret: Optional[str] = None):
        self._api_key = api_key
        self._webhook_secret = webhook_secret

    async def _call(self, operation: str, fn, **params) -> GatewayResult:
        with gateway_latency.labels(operation=operation).time():
            try:
                obj = await asyncio.to_thread(fn, api_key=self._api_key, **params)
            except stripe.StripeError as e:
                result = _error_result(e)
                logger.warning(
                    "gateway_call_failed",
                    operation=operation,
                    error_type=type(e).__name__,
                    error_code=result.error_code,
                    decline_code=result.decline_code,
                    retryable=result.retryable,
                )
                return result
        return obj

    async def create_charge(
        self,
        *,
        amount: Decimal,
        currency: str,
        payment_method_id: str,
        idempotency_key: str,
        description: Optional[str] = None,
        customer_email: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> GatewayResult:
        params = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "payment_method": payment_method_id,
            "confirm": True,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "metadata": metadata or {},
            "idempotency_key": idempotency_key,
        }
        if description:
            params["description"] = description
        if customer_email:
            params["receipt_email"] = customer_email

        obj = await self._call("create_charge", stripe.PaymentIntent.create, **params)
        if isinstance(obj, GatewayResult):
            return obj
        result = _intent_result(obj)
        logger.info("gateway_charge_created", payment_intent_id=result.payment_intent_id, status=result.gateway_status)
        return result

    async def retrieve_charge(self, payment_intent_id: str) -> GatewayResult:
        obj = await self._call("retrieve_charge", stripe.PaymentIntent.retrieve, id=payment_intent_id)
        if isinstance(obj, GatewayResult):
            return obj
        return _intent_result(obj)

    async def cancel_charge(self, payment_intent_id: str) -> GatewayResult:
        obj = await self._call("cancel_charge", stripe.PaymentIntent.cancel, intent=payment_intent_id)
        if isinstance(obj, GatewayResult):
            return obj
        result = _intent_result(obj)
        if obj["status"] == "canceled":
            result.outcome = GatewayOutcome.SUCCEEDED
        return result

    async def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount: Decimal,
        currency: str,
        reason: str,
        idempotency_key: str,
    ) -> GatewayResult:
        obj = await self._call(
            "create_refund",
            stripe.Refund.create,
            payment_intent=payment_intent_id,
            amount=to_minor_units(amount),
            reason="requested_by_customer",
            metadata={"reason": reason[:500]},
            idempotency_key=idempotency_key,
        )
        if isinstance(obj, GatewayResult):
            return obj

        status = obj["status"]
        failed = status in FAILED_REFUND_STATUSES
        logger.info("gateway_refund_created", refund_id=obj["id"], status=status)
        return GatewayResult(
            outcome=GatewayOutcome.ERROR if failed else GatewayOutcome.SUCCEEDED,
            payment_intent_id=payment_intent_id,
            transaction_id=obj["id"],
            gateway_status=status,
            error_code=obj.get("failure_reason") if failed else None,
            error_message=f"Refund {status}" if failed else None,
            raw=str(obj),
        )

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:
        if not self._webhook_secret:
            logger.error("webhook_secret_missing")
            raise InvalidSignature("Webhook signature verification is not configured")
        if not signature:
            raise InvalidSignature("Missing signature header")

        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise InvalidSignature("Invalid signature")
        except ValueError:
            raise InvalidSignature("Invalid payload")

        event = json.loads(payload)
        obj = event.get("data", {}).get("object", {}) or {}
        error = obj.get("last_payment_error") or {}
        if obj.get("object") == "payment_intent":
            intent_id = obj.get("id")
        else:
            intent_id = obj.get("payment_intent")

        return WebhookEvent(
            id=event.get("id", ""),
            type=event.get("type", ""),
            payment_intent_id=intent_id,
            error_code=error.get("code"),
            error_message=error.get("message"),
            decline_code=error.get("decline_code"),
            fully_refunded=bool(obj.get("refunded")),
            data=obj,
        )
