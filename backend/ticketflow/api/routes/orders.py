"""
Order endpoints: create and read the authenticated user's orders.
"""

from fastapi import APIRouter, Depends, Query, status

from ticketflow.api.deps import get_current_user, get_order_ledger
from ticketflow.models.user import User
from ticketflow.schemas.order import CreateOrderRequest, OrderResponse
from ticketflow.services.order_ledger import LineItem, OrderLedger

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.post("/", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    data: CreateOrderRequest,
    user: User = Depends(get_current_user),
    ledger: OrderLedger = Depends(get_order_ledger),
):
    """
    Create a PENDING order for reserved tickets.

    The order holds its reservation until `expires_at`; unpaid orders are
    cancelled by the expiry sweep after that.
    """
    items = [
        LineItem(ticket_type_id=item.ticket_type_id, quantity=item.quantity, unit_price=item.unit_price)
        for item in data.items
    ]
    return await ledger.create_order(
        user.id,
        event_id=data.event_id,
        items=items,
        reservation_id=data.reservation_id,
    )


@router.get("/", response_model=list[OrderResponse])
async def list_orders(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    ledger: OrderLedger = Depends(get_order_ledger),
):
    """Get the authenticated user's orders, newest first."""
    return await ledger.list_user_orders(user.id, limit=limit, offset=offset)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    user: User = Depends(get_current_user),
    ledger: OrderLedger = Depends(get_order_ledger),
):
    return await ledger.get_order(order_id, user.id)
