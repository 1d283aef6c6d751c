from ticketflow.schemas.user import (
    RegisterRequest, LoginRequest, LoginResponse, UserResponse, MessageResponse,
)
from ticketflow.schemas.order import (
    CreateOrderRequest, OrderItemRequest, OrderResponse, ProcessPaymentRequest,
    PaymentResponse, RefundRequest,
)

__all__ = [
    "RegisterRequest", "LoginRequest", "LoginResponse", "UserResponse", "MessageResponse",
    "CreateOrderRequest", "OrderItemRequest", "OrderResponse", "ProcessPaymentRequest",
    "PaymentResponse", "RefundRequest",
]
