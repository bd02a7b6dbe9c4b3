"""Pytest configuration and fixtures."""

import os
import secrets
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"
TEST_WEBHOOK_SECRET = "whsec_test"

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", _TEST_JWT_SECRET)
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_000")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)

from agrotrust.escrow import (  # noqa: E402
    EscrowReconciler,
    InMemoryEscrowStorage,
    InMemoryPaymentGateway,
    RfqRef,
)
from app.dependencies import get_reconciler  # noqa: E402
from app.main import app  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

# Test users and their marketplace roles
BUYER_ID = "usr_TEST_BUYER"
COOP_ID = "usr_TEST_COOP"
ADMIN_ID = "usr_TEST_ADMIN"
INSPECTOR_ID = "usr_TEST_INSPECTOR"
STRANGER_ID = "usr_TEST_STRANGER"

PROFILES = {
    BUYER_ID: "buyer",
    COOP_ID: "cooperative",
    ADMIN_ID: "admin",
    INSPECTOR_ID: "inspector",
    STRANGER_ID: "buyer",
}


@pytest.fixture
def storage():
    store = InMemoryEscrowStorage()
    store.add_rfq(
        RfqRef(
            id="rfq-1",
            buyer_id=BUYER_ID,
            cooperative_id=COOP_ID,
            lot_id="lot-1",
            product_name="Cocoa beans",
            quantity_kg=Decimal("1200"),
        )
    )
    return store


@pytest.fixture
def gateway():
    return InMemoryPaymentGateway(webhook_secret=TEST_WEBHOOK_SECRET)


@pytest.fixture
def reconciler(storage, gateway):
    return EscrowReconciler(storage=storage, gateway=gateway)


@pytest.fixture
def client(reconciler):
    """Test client wired to the in-memory reconciler, rate limits off."""
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    limiter.enabled = False
    yield TestClient(app)
    app.dependency_overrides.clear()
    limiter.enabled = True


@pytest.fixture(autouse=True)
def mock_profile_lookup(monkeypatch, request):
    """Avoid real Supabase calls for auth in unit tests."""
    if request.cls is not None and request.cls.__name__ == "TestGetProfile":
        # These tests exercise the real get_profile against a mocked client.
        monkeypatch.setattr("app.database.get_supabase_client", lambda settings=None: MagicMock())
        return

    async def _fake_get_profile(db, user_id):
        role = PROFILES.get(user_id)
        if role is None:
            return None
        return {"id": user_id, "email": f"{user_id.lower()}@example.test", "role": role}

    monkeypatch.setattr("app.database.get_profile", _fake_get_profile)
    monkeypatch.setattr("app.database.get_supabase_client", lambda settings=None: MagicMock())


def _headers(user_id: str) -> dict:
    from app.auth import create_access_token
    from app.config import get_settings

    token = create_access_token(user_id, get_settings())
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    """Auth headers for an arbitrary user id."""
    return _headers


@pytest.fixture
def buyer_headers():
    return _headers(BUYER_ID)


@pytest.fixture
def admin_headers():
    return _headers(ADMIN_ID)
