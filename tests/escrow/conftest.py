"""Fixtures for escrow tests: in-memory storage and gateway."""

import json
from decimal import Decimal

import pytest

from agrotrust.escrow import (
    Actor,
    EscrowConfig,
    EscrowReconciler,
    InMemoryEscrowStorage,
    InMemoryPaymentGateway,
    RfqRef,
)
from agrotrust.escrow.gateway import signature_header


@pytest.fixture
def storage():
    """Storage with RFQ r1 (buyer b1, cooperative c1) registered."""
    store = InMemoryEscrowStorage()
    store.add_rfq(
        RfqRef(
            id="r1",
            buyer_id="b1",
            cooperative_id="c1",
            lot_id="lot-1",
            product_name="Hazelnuts",
            quantity_kg=Decimal("500"),
        )
    )
    return store


@pytest.fixture
def gateway():
    return InMemoryPaymentGateway(webhook_secret="whsec_test")


@pytest.fixture
def reconciler(storage, gateway):
    return EscrowReconciler(storage=storage, gateway=gateway, config=EscrowConfig())


@pytest.fixture
def buyer():
    return Actor(user_id="b1", role="buyer")


@pytest.fixture
def admin():
    return Actor(user_id="admin-1", role="admin")


@pytest.fixture
def escrow(reconciler, buyer):
    """A freshly initialized escrow for r1 (awaiting_payment)."""
    result = reconciler.init(
        rfq_id="r1",
        buyer_id="b1",
        cooperative_id="c1",
        amount=100,
        currency="usd",
        actor=buyer,
    )
    return result.escrow


@pytest.fixture
def authorized_escrow(reconciler, gateway, escrow):
    """An escrow whose hold the gateway reports capturable, synced locally."""
    gateway.set_intent_status(escrow.payment_intent_id, "requires_capture")
    return reconciler.sync(escrow.id)


def signed_event(gateway, event_type, obj, event_id="evt_1"):
    """Build a webhook body and a valid signature header for it."""
    payload = json.dumps(
        {"id": event_id, "type": event_type, "created": 0, "data": {"object": obj}}
    ).encode()
    return payload, signature_header(payload, gateway.webhook_secret)


@pytest.fixture
def make_event(gateway):
    def _make(event_type, obj, event_id="evt_1"):
        return signed_event(gateway, event_type, obj, event_id)

    return _make
