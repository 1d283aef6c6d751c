"""
Service interfaces for dependency inversion.
Allows swapping implementations without changing business logic.
"""

from .payment_gateway import GatewayOutcome, GatewayResult, PaymentGateway, WebhookEvent

__all__ = ['GatewayOutcome', 'GatewayResult', 'PaymentGateway', 'WebhookEvent']
