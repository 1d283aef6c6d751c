"""
Pydantic schemas for order and payment request/response validation.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class OrderItemRequest(BaseModel):
    ticket_type_id: int
    quantity: int
    unit_price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)


class CreateOrderRequest(BaseModel):
    event_id: int
    reservation_id: Optional[str] = Field(None, max_length=64)
    items: list[OrderItemRequest]


class OrderItemResponse(BaseModel):
    id: int
    ticket_type_id: int
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    fees: Decimal
    total_price: Decimal
    status: str

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    id: int
    user_id: int
    event_id: int
    order_number: str
    subtotal_amount: Decimal
    service_fee: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    payment_status: str
    payment_method: Optional[str]
    currency: str
    reservation_id: Optional[str]
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime]
    items: list[OrderItemResponse]

    model_config = {"from_attributes": True}


class ProcessPaymentRequest(BaseModel):
    order_id: int
    payment_method_id: str = Field(..., min_length=1)
    customer_email: Optional[str] = None


class RefundRequest(BaseModel):
    reason: str = Field("Customer requested refund", max_length=255)
    item_ids: Optional[list[int]] = None


class PaymentResponse(BaseModel):
    transaction_id: Optional[int] = None
    order_id: int
    status: str
    amount: Decimal
    currency: str
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    requires_action: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    decline_code: Optional[str] = None
    retryable: bool = False

    model_config = {"from_attributes": True}
