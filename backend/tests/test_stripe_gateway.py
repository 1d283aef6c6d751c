"""
Tests for the Stripe gateway mapping and webhook verification.

No network calls: only the pure mapping helpers and signature checks.
"""

import json
from decimal import Decimal

import pytest
import stripe

from ticketflow.core.exceptions import InvalidSignature
from ticketflow.services.interfaces.payment_gateway import GatewayOutcome
from ticketflow.services.stripe_gateway import StripeGateway, _error_result, _intent_result, to_minor_units

from conftest import WEBHOOK_SECRET, sign_webhook


def test_to_minor_units():
    assert to_minor_units(Decimal("90.00")) == 9000
    assert to_minor_units(Decimal("0.01")) == 1
    assert to_minor_units(Decimal("118.79")) == 11879


@pytest.mark.parametrize(
    "status, outcome",
    [
        ("succeeded", GatewayOutcome.SUCCEEDED),
        ("requires_action", GatewayOutcome.REQUIRES_ACTION),
        ("processing", GatewayOutcome.REQUIRES_ACTION),
        ("requires_payment_method", GatewayOutcome.DECLINED),
        ("canceled", GatewayOutcome.DECLINED),
    ],
)
def test_intent_status_mapping(status, outcome):
    result = _intent_result({"id": "pi_1", "status": status, "client_secret": "pi_1_secret"})
    assert result.outcome == outcome
    assert result.payment_intent_id == "pi_1"
    assert result.client_secret == "pi_1_secret"


def test_card_error_is_a_decline():
    error = stripe.CardError(
        "Your card has insufficient funds.",
        None,
        "card_declined",
        json_body={"error": {
            "code": "card_declined",
            "decline_code": "insufficient_funds",
            "message": "Your card has insufficient funds.",
        }},
    )
    result = _error_result(error)
    assert result.outcome == GatewayOutcome.DECLINED
    assert result.error_code == "card_declined"
    assert result.decline_code == "insufficient_funds"
    assert not result.retryable


def test_connection_error_is_retryable():
    result = _error_result(stripe.APIConnectionError("Network down"))
    assert result.outcome == GatewayOutcome.ERROR
    assert result.retryable


def test_invalid_request_is_not_retryable():
    result = _error_result(stripe.InvalidRequestError("No such payment_intent", "id"))
    assert result.outcome == GatewayOutcome.ERROR
    assert not result.retryable


def test_webhook_with_valid_signature_is_parsed():
    payload = json.dumps({
        "id": "evt_1",
        "type": "payment_intent.payment_failed",
        "data": {"object": {
            "id": "pi_9",
            "object": "payment_intent",
            "status": "requires_payment_method",
            "last_payment_error": {"code": "card_declined", "decline_code": "expired_card", "message": "Expired"},
        }},
    }).encode()
    gateway = StripeGateway("sk_test_unused", WEBHOOK_SECRET)

    event = gateway.parse_webhook(payload, sign_webhook(payload))

    assert event.id == "evt_1"
    assert event.type == "payment_intent.payment_failed"
    assert event.payment_intent_id == "pi_9"
    assert event.decline_code == "expired_card"


def test_charge_event_resolves_its_intent():
    payload = json.dumps({
        "id": "evt_2",
        "type": "charge.refunded",
        "data": {"object": {"id": "ch_1", "object": "charge", "payment_intent": "pi_9", "refunded": True}},
    }).encode()
    event = StripeGateway("sk_test_unused", WEBHOOK_SECRET).parse_webhook(payload, sign_webhook(payload))
    assert event.payment_intent_id == "pi_9"
    assert event.fully_refunded


@pytest.mark.parametrize(
    "signature",
    [None, "", "t=1,v1=deadbeef", "garbage"],
)
def test_webhook_with_bad_signature_is_rejected(signature):
    gateway = StripeGateway("sk_test_unused", WEBHOOK_SECRET)
    with pytest.raises(InvalidSignature):
        gateway.parse_webhook(b'{"id": "evt_1"}', signature)


def test_webhook_signed_with_other_secret_is_rejected():
    payload = b'{"id": "evt_1", "type": "payment_intent.succeeded"}'
    gateway = StripeGateway("sk_test_unused", WEBHOOK_SECRET)
    with pytest.raises(InvalidSignature):
        gateway.parse_webhook(payload, sign_webhook(payload, secret="whsec_other"))


def test_webhook_without_configured_secret_fails_closed():
    payload = b'{"id": "evt_1", "type": "payment_intent.succeeded"}'
    gateway = StripeGateway("sk_test_unused", webhook_secret=None)
    with pytest.raises(InvalidSignature):
        gateway.parse_webhook(payload, sign_webhook(payload))
