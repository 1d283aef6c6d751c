"""Models package: import all models so Alembic and create_all can discover them."""

from ticketflow.models.user import User
from ticketflow.models.tokens import EmailVerificationToken, PasswordResetToken
from ticketflow.models.user_session import UserSession
from ticketflow.models.order import (
    Order, OrderItem, PaymentTransaction, PaymentStatus, OrderItemStatus,
)

__all__ = [
    "User", "EmailVerificationToken", "PasswordResetToken", "UserSession",
    "Order", "OrderItem", "PaymentTransaction", "PaymentStatus", "OrderItemStatus",
]
