"""
Payment endpoints: charge, confirm after customer authentication, refund,
and audit lookup.
"""

from fastapi import APIRouter, Depends

from ticketflow.api.deps import get_current_user, get_payment_orchestrator
from ticketflow.models.user import User
from ticketflow.schemas.order import PaymentResponse, ProcessPaymentRequest, RefundRequest
from ticketflow.services.payment_service import PaymentOrchestrator

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/process", response_model=PaymentResponse)
async def process_payment(
    data: ProcessPaymentRequest,
    user: User = Depends(get_current_user),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """
    Charge an order.

    When the card needs 3-D Secure, `requires_action` is true and the
    `client_secret` must be used client-side before calling confirm.
    """
    result = await payments.process_payment(
        data.order_id,
        data.payment_method_id,
        user_id=user.id,
        customer_email=data.customer_email or user.email,
    )
    return PaymentResponse.model_validate(result)


@router.post("/confirm/{payment_intent_id}", response_model=PaymentResponse)
async def confirm_payment(
    payment_intent_id: str,
    user: User = Depends(get_current_user),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Confirm a charge after client-side authentication. Safe to call repeatedly."""
    result = await payments.confirm_payment(payment_intent_id, user_id=user.id)
    return PaymentResponse.model_validate(result)


@router.post("/refund/{order_id}", response_model=PaymentResponse)
async def refund_payment(
    order_id: int,
    data: RefundRequest,
    user: User = Depends(get_current_user),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Refund the whole order, or only the listed items."""
    result = await payments.refund_payment(order_id, data.reason, item_ids=data.item_ids, user_id=user.id)
    return PaymentResponse.model_validate(result)


@router.get("/status/{transaction_id}", response_model=PaymentResponse)
async def payment_status(
    transaction_id: int,
    user: User = Depends(get_current_user),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    result = await payments.get_payment_status(transaction_id, user_id=user.id)
    return PaymentResponse.model_validate(result)
