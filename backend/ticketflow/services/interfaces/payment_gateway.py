"""
Payment gateway interface.
Keeps the orchestrator independent of the concrete payment provider.
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional


class GatewayOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    REQUIRES_ACTION = "requires_action"  # customer must authenticate (3-D Secure)
    DECLINED = "declined"
    ERROR = "error"


@dataclass
class GatewayResult:
    """Structured outcome of one gateway call; never an exception for declines."""

    outcome: GatewayOutcome
    payment_intent_id: Optional[str] = None
    transaction_id: Optional[str] = None  # charge or refund id
    client_secret: Optional[str] = None
    gateway_status: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    decline_code: Optional[str] = None
    retryable: bool = False
    raw: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == GatewayOutcome.SUCCEEDED


@dataclass
class WebhookEvent:
    id: str
    type: str
    payment_intent_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    decline_code: Optional[str] = None
    fully_refunded: bool = False
    data: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """
    Interface for payment providers.

    Implementations:
    - StripeGateway: Stripe PaymentIntents and Refunds

    Amounts are decimal currency units; implementations convert to the
    provider's minor units.
    """

    @abstractmethod
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
        """
        Create and confirm a charge in one call.

        Returns SUCCEEDED, REQUIRES_ACTION (with client_secret), DECLINED
        (with decline codes) or ERROR (retryable when transient).
        """

    @abstractmethod
    async def retrieve_charge(self, payment_intent_id: str) -> GatewayResult:
        """Fetch the current state of a charge after client-side authentication."""

    @abstractmethod
    async def cancel_charge(self, payment_intent_id: str) -> GatewayResult:
        """Cancel a charge that has not completed."""

    @abstractmethod
    async def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount: Decimal,
        currency: str,
        reason: str,
        idempotency_key: str,
    ) -> GatewayResult:
        """Reverse all or part of a completed charge."""

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:
        """
        Verify a webhook signature and parse the event.

        Raises InvalidSignature when the payload cannot be verified.
        """
