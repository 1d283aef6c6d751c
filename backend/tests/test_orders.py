"""
Tests for order creation, pricing and the versioned status machine.
"""

import re
from datetime import timedelta
from decimal import Decimal

import pytest
from httpx import AsyncClient
from prometheus_client import REGISTRY
from sqlalchemy import update

from ticketflow.core.exceptions import Conflict, InvalidState, NotFound, ValidationFailed
from ticketflow.models.order import Order, PaymentStatus
from ticketflow.services.order_ledger import LineItem, OrderLedger

from conftest import create_user

TWO_ITEMS = [
    LineItem(ticket_type_id=1, quantity=2, unit_price=Decimal("25.00")),
    LineItem(ticket_type_id=2, quantity=1, unit_price=Decimal("40.00")),
]


def retry_count() -> float:
    return REGISTRY.get_sample_value("order_transition_retries_total") or 0.0


class RacingLedger(OrderLedger):
    """Ledger whose reads are each followed by a competing write to the same order."""

    races = 0
    racer_status = None

    async def load(self, order_id):
        order = await super().load(order_id)
        if self.races and order is not None:
            self.races -= 1
            values = {"version": Order.version + 1}
            if self.racer_status is not None:
                values["payment_status"] = self.racer_status.value
            await self.db.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        return order


# ── Creation and pricing ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_order_without_fees(ledger, test_user, clock):
    order = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)

    assert order.subtotal_amount == Decimal("90.00")
    assert order.service_fee == Decimal("0.00")
    assert order.tax_amount == Decimal("0.00")
    assert order.total_amount == Decimal("90.00")
    assert order.payment_status == PaymentStatus.PENDING.value
    assert order.version == 1
    assert order.currency == "USD"
    assert order.expires_at == clock() + timedelta(minutes=15)
    assert re.fullmatch(r"ORD-20260115-[0-9A-F]{8}", order.order_number)

    assert [item.subtotal for item in order.items] == [Decimal("50.00"), Decimal("40.00")]
    assert all(item.status == "active" for item in order.items)


@pytest.mark.asyncio
async def test_fees_and_tax_add_up_to_total(db_session, settings, clock, test_user):
    priced = settings.model_copy(update={"SERVICE_FEE_RATE": Decimal("0.10"), "TAX_RATE": Decimal("0.08")})
    ledger = OrderLedger(db_session, settings=priced, clock=clock)

    order = await ledger.create_order(
        test_user.id,
        event_id=10,
        items=[LineItem(ticket_type_id=1, quantity=3, unit_price=Decimal("33.33"))],
    )

    assert order.subtotal_amount == Decimal("99.99")
    assert order.service_fee == Decimal("10.00")
    assert order.tax_amount == Decimal("8.80")
    assert order.total_amount == Decimal("118.79")
    assert order.subtotal_amount + order.service_fee + order.tax_amount == order.total_amount


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "items",
    [
        [],
        [LineItem(ticket_type_id=1, quantity=0, unit_price=Decimal("10.00"))],
        [LineItem(ticket_type_id=1, quantity=1, unit_price=Decimal("-1.00"))],
    ],
)
async def test_create_order_rejects_invalid_items(ledger, test_user, items):
    with pytest.raises(ValidationFailed) as exc_info:
        await ledger.create_order(test_user.id, event_id=10, items=items)
    assert exc_info.value.reason == "invalid_data"


@pytest.mark.asyncio
async def test_order_numbers_are_unique(ledger, test_user):
    first = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)
    second = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)
    assert first.order_number != second.order_number


@pytest.mark.asyncio
async def test_get_order_is_scoped_to_owner(ledger, test_user, db_session):
    other = await create_user(db_session, email="other@example.com")
    order = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)

    assert (await ledger.get_order(order.id, test_user.id)).id == order.id
    with pytest.raises(NotFound):
        await ledger.get_order(order.id, other.id)
    with pytest.raises(NotFound):
        await ledger.get_order(9999)


@pytest.mark.asyncio
async def test_list_user_orders_newest_first(ledger, test_user, clock):
    first = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)
    clock.advance(minutes=1)
    second = await ledger.create_order(test_user.id, event_id=11, items=TWO_ITEMS)

    orders = await ledger.list_user_orders(test_user.id)
    assert [o.id for o in orders] == [second.id, first.id]
    assert [o.id for o in await ledger.list_user_orders(test_user.id, limit=1, offset=1)] == [first.id]


@pytest.mark.asyncio
async def test_find_expired(ledger, test_user, clock):
    order = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)
    assert await ledger.find_expired() == []

    clock.advance(minutes=15)
    assert [o.id for o in await ledger.find_expired()] == [order.id]


# ── Status transitions ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_transition_bumps_version_and_appends_audit(ledger, test_user):
    order = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)

    result = await ledger.transition_status(order.id, PaymentStatus.PROCESSING)

    assert result.changed
    assert result.order.payment_status == PaymentStatus.PROCESSING.value
    assert result.order.version == 2
    assert result.transaction.status == PaymentStatus.PROCESSING.value
    assert result.transaction.amount == Decimal("90.00")
    assert [t.status for t in result.order.transactions] == ["PROCESSING"]


@pytest.mark.asyncio
async def test_illegal_transition_is_rejected(ledger, test_user):
    order = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)

    with pytest.raises(InvalidState):
        await ledger.transition_status(order.id, PaymentStatus.CONFIRMED)

    unchanged = await ledger.load(order.id)
    assert unchanged.payment_status == PaymentStatus.PENDING.value
    assert unchanged.version == 1
    assert unchanged.transactions == []


@pytest.mark.asyncio
async def test_terminal_orders_do_not_move(ledger, test_user):
    order = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)
    await ledger.transition_status(order.id, PaymentStatus.CANCELLED)

    for target in (PaymentStatus.PROCESSING, PaymentStatus.CONFIRMED, PaymentStatus.PENDING):
        with pytest.raises(InvalidState):
            await ledger.transition_status(order.id, target)


@pytest.mark.asyncio
async def test_repeated_confirmation_is_a_noop(ledger, test_user):
    order = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)
    await ledger.transition_status(order.id, PaymentStatus.PROCESSING)
    await ledger.transition_status(order.id, PaymentStatus.CONFIRMED)

    again = await ledger.transition_status(order.id, PaymentStatus.CONFIRMED)

    assert not again.changed
    assert again.transaction is None
    assert again.order.version == 3
    assert [t.status for t in again.order.transactions] == ["PROCESSING", "CONFIRMED"]


@pytest.mark.asyncio
async def test_failed_payment_can_be_retried(ledger, test_user):
    order = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)
    await ledger.transition_status(order.id, PaymentStatus.PROCESSING)
    await ledger.transition_status(order.id, PaymentStatus.PAYMENT_FAILED)

    result = await ledger.transition_status(order.id, PaymentStatus.PROCESSING)
    assert result.changed
    assert result.order.version == 4


@pytest.mark.asyncio
async def test_stale_version_is_retried(db_session, settings, clock, test_user):
    ledger = RacingLedger(db_session, settings=settings, clock=clock)
    order = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)
    before = retry_count()

    ledger.races = 1
    result = await ledger.transition_status(order.id, PaymentStatus.PROCESSING)

    assert result.changed
    # One bump by the competing writer, one by the retried CAS
    assert result.order.version == 3
    assert retry_count() == before + 1


@pytest.mark.asyncio
async def test_lost_race_to_same_status_is_a_noop(db_session, settings, clock, test_user):
    ledger = RacingLedger(db_session, settings=settings, clock=clock)
    order = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)
    await ledger.transition_status(order.id, PaymentStatus.PROCESSING)

    # Someone else confirms between our read and our write
    ledger.races = 1
    ledger.racer_status = PaymentStatus.CONFIRMED
    result = await ledger.transition_status(order.id, PaymentStatus.CONFIRMED)

    assert not result.changed
    assert result.order.payment_status == PaymentStatus.CONFIRMED.value
    assert [t.status for t in result.order.transactions] == ["PROCESSING"]


@pytest.mark.asyncio
async def test_retries_are_bounded(db_session, settings, clock, test_user):
    ledger = RacingLedger(db_session, settings=settings, clock=clock)
    order = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)

    ledger.races = settings.ORDER_MAX_RETRY_ATTEMPTS
    with pytest.raises(Conflict) as exc_info:
        await ledger.transition_status(order.id, PaymentStatus.PROCESSING)
    assert exc_info.value.retryable


# ── API ───────────────────────────────────────────────────────────────


ORDER_PAYLOAD = {
    "event_id": 10,
    "items": [
        {"ticket_type_id": 1, "quantity": 2, "unit_price": "25.00"},
        {"ticket_type_id": 2, "quantity": 1, "unit_price": "40.00"},
    ],
}


@pytest.mark.asyncio
async def test_create_order_endpoint(client: AsyncClient, auth_headers, test_user):
    response = await client.post("/api/v1/orders/", json=ORDER_PAYLOAD, headers=auth_headers)
    assert response.status_code == 201
    data = response.json()
    assert data["user_id"] == test_user.id
    assert Decimal(data["total_amount"]) == Decimal("90.00")
    assert data["payment_status"] == "PENDING"
    assert len(data["items"]) == 2
    assert "version" not in data


@pytest.mark.asyncio
async def test_create_order_requires_auth(client: AsyncClient):
    response = await client.post("/api/v1/orders/", json=ORDER_PAYLOAD)
    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_create_order_with_no_items_is_400(client: AsyncClient, auth_headers):
    response = await client.post("/api/v1/orders/", json={"event_id": 10, "items": []}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["reason"] == "invalid_data"


@pytest.mark.asyncio
async def test_list_and_get_orders(client: AsyncClient, auth_headers, ledger, test_user, db_session):
    other = await create_user(db_session, email="other@example.com")
    mine = await ledger.create_order(test_user.id, event_id=10, items=TWO_ITEMS)
    theirs = await ledger.create_order(other.id, event_id=10, items=TWO_ITEMS)

    listed = await client.get("/api/v1/orders/", headers=auth_headers)
    assert listed.status_code == 200
    assert [o["id"] for o in listed.json()] == [mine.id]

    assert (await client.get(f"/api/v1/orders/{mine.id}", headers=auth_headers)).status_code == 200
    assert (await client.get(f"/api/v1/orders/{theirs.id}", headers=auth_headers)).status_code == 404
