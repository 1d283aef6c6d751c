"""
Payment gateway factory.
Configures which payment provider the orchestrator talks to.
"""

from typing import Optional

from ticketflow.core.config import get_settings
from ticketflow.services.interfaces.payment_gateway import PaymentGateway
from ticketflow.services.stripe_gateway import StripeGateway


def build_payment_gateway() -> PaymentGateway:
    """
    Build the configured gateway.

    The API key and webhook secret are read once here and held by the
    gateway instance for the life of the process.
    """
    settings = get_settings()
    provider = settings.PAYMENT_GATEWAY

    if provider == 'stripe':
        return StripeGateway(settings.STRIPE_API_KEY, settings.STRIPE_WEBHOOK_SECRET)
    raise ValueError(f"Unknown payment gateway: {provider}")


# Singleton instance
_gateway: Optional[PaymentGateway] = None

def get_gateway() -> PaymentGateway:
    """Get payment gateway singleton."""
    global _gateway
    if _gateway is None:
        _gateway = build_payment_gateway()
    return _gateway
