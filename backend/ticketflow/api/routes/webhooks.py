"""
Payment gateway webhook ingress.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from ticketflow.api.deps import get_payment_orchestrator
from ticketflow.services.payment_service import PaymentOrchestrator

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """
    Receive a Stripe event.

    The signature is checked against the raw body before anything is parsed;
    an invalid signature is a 400. Unknown event types are acknowledged.
    """
    payload = await request.body()
    return await payments.handle_webhook(payload, stripe_signature)
