"""Tests for the payment gateway webhook endpoint."""

import json

import pytest

from agrotrust.escrow.gateway import signature_header
from agrotrust.escrow.models import EscrowStatus

WEBHOOK_SECRET = "whsec_test"
INIT_BODY = {
    "rfqId": "rfq-1",
    "buyerId": "usr_TEST_BUYER",
    "cooperativeId": "usr_TEST_COOP",
    "amount": "250.00",
}


@pytest.fixture
def created(client, buyer_headers):
    return client.post("/escrow/init", json=INIT_BODY, headers=buyer_headers).json()


def _deliver(client, event_type, obj, event_id="evt_test_1", secret=WEBHOOK_SECRET):
    payload = json.dumps(
        {"id": event_id, "type": event_type, "created": 1700000000, "data": {"object": obj}}
    ).encode()
    return client.post(
        "/webhook",
        content=payload,
        headers={
            "stripe-signature": signature_header(payload, secret),
            "content-type": "application/json",
        },
    )


def _intent(created, status):
    return {
        "id": created["paymentIntentId"],
        "object": "payment_intent",
        "status": status,
        "metadata": {"escrow_id": created["escrowId"]},
    }


def test_capturable_event_authorizes(client, storage, created):
    response = _deliver(
        client, "payment_intent.amount_capturable_updated", _intent(created, "requires_capture")
    )

    assert response.status_code == 200
    assert response.json() == {
        "received": True,
        "handled": True,
        "eventId": "evt_test_1",
        "escrowId": created["escrowId"],
        "appliedStatus": "authorized",
    }
    assert storage.get(created["escrowId"]).status == EscrowStatus.AUTHORIZED


def test_redelivery_is_harmless(client, storage, created):
    obj = _intent(created, "requires_capture")
    _deliver(client, "payment_intent.amount_capturable_updated", obj)
    response = _deliver(client, "payment_intent.amount_capturable_updated", obj)

    assert response.status_code == 200
    assert response.json()["appliedStatus"] is None
    types = [e.type for e in storage.list_events(created["escrowId"])]
    assert types.count("payment_intent.amount_capturable_updated") == 2


def test_bad_signature(client, storage, created):
    response = _deliver(
        client,
        "payment_intent.canceled",
        _intent(created, "canceled"),
        secret="whsec_attacker",
    )

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_SIGNATURE"
    assert storage.get(created["escrowId"]).status == EscrowStatus.AWAITING_PAYMENT


def test_missing_signature(client):
    response = client.post("/webhook", content=b"{}")
    assert response.status_code == 400


def test_unknown_escrow_acknowledged(client):
    response = _deliver(
        client,
        "payment_intent.succeeded",
        {"id": "pi_x", "status": "succeeded", "metadata": {"escrow_id": "gone"}},
    )
    assert response.status_code == 200
    assert response.json()["handled"] is False


def test_unrelated_event_acknowledged(client):
    response = _deliver(client, "customer.created", {"id": "cus_1"})
    assert response.status_code == 200
    assert response.json()["handled"] is False
