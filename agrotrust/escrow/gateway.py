"""
Payment gateway client for escrow holds.

Talks to Stripe's REST API directly:
1. Creates manual-capture payment intents (or hosted checkout sessions)
2. Retrieves intent/session status for reconciliation
3. Captures held funds on release
4. Verifies webhook signatures (``t=<ts>,v1=<hmac-sha256>`` scheme)

Gateway-native status strings are returned as-is; mapping them to escrow
states is the reconciler's job.
"""

import hashlib
import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from agrotrust.escrow.errors import GatewayError, InvalidSignatureError, ValidationError

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com"
DEFAULT_TIMEOUT = 15.0
DEFAULT_WEBHOOK_TOLERANCE = 300  # seconds

# Currencies Stripe expresses without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
        "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
    }
)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a major-unit amount to the gateway's integer minor units."""
    amount = Decimal(str(amount))
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# =============================================================================
# Result types
# =============================================================================


@dataclass
class PaymentHold:
    """Result of creating a manual-capture hold.

    In the checkout flow ``intent_id`` is None until the buyer pays;
    ``client_reference`` holds the session id to look it up later.
    """

    intent_id: Optional[str] = None
    client_reference: Optional[str] = None
    client_secret: Optional[str] = None
    checkout_url: Optional[str] = None


@dataclass
class PaymentIntentInfo:
    """Live state of a payment intent."""

    id: str
    status: str
    amount: Optional[int] = None
    amount_capturable: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Set when the last payment attempt was declined
    last_payment_error: Optional[str] = None


@dataclass
class CheckoutSessionInfo:
    """Live state of a hosted checkout session."""

    id: str
    intent_id: Optional[str] = None
    url: Optional[str] = None
    status: Optional[str] = None  # open | complete | expired
    payment_status: Optional[str] = None


@dataclass
class CaptureResult:
    intent_id: str
    status: str


@dataclass
class WebhookEvent:
    """A verified gateway notification."""

    id: str
    type: str
    object: Dict[str, Any]
    created: Optional[int] = None

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.object.get("metadata") or {}


class PaymentGateway(Protocol):
    """Protocol for payment processor clients."""

    def create_hold(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        description: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentHold:
        """Authorize-only hold. Return URLs switch to a hosted checkout session."""
        ...

    def retrieve_intent(self, intent_id: str) -> PaymentIntentInfo:
        ...

    def retrieve_session(self, session_id: str) -> CheckoutSessionInfo:
        ...

    def capture(self, intent_id: str, idempotency_key: Optional[str] = None) -> CaptureResult:
        ...

    def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """Verify and parse a webhook body. Raises InvalidSignatureError."""
        ...


# =============================================================================
# Webhook signatures
# =============================================================================


def _parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    """HMAC-SHA256 over ``"<timestamp>.<payload>"``, hex encoded."""
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def signature_header(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a signature header the way the gateway sends it."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(payload, secret, timestamp)}"


def verify_webhook_signature(
    payload: bytes,
    signature: str,
    secret: str,
    tolerance: int = DEFAULT_WEBHOOK_TOLERANCE,
    now: Optional[float] = None,
) -> WebhookEvent:
    """Verify a signed webhook body and parse it into a WebhookEvent.

    Raises:
        InvalidSignatureError: missing/garbled header, no matching v1
            signature, or timestamp outside the tolerance window
        ValidationError: signature is valid but the body is not an event
    """
    if not signature:
        raise InvalidSignatureError("Missing webhook signature")
    if isinstance(payload, str):
        payload = payload.encode()

    timestamp, candidates = _parse_signature_header(signature)
    if timestamp is None or not candidates:
        raise InvalidSignatureError("Unable to parse webhook signature header")

    expected = compute_signature(payload, secret, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        raise InvalidSignatureError("No signature matches the expected signature for payload")

    now = time.time() if now is None else now
    if tolerance and abs(now - timestamp) > tolerance:
        raise InvalidSignatureError("Webhook timestamp outside the tolerance zone")

    try:
        body = json.loads(payload)
        return WebhookEvent(
            id=str(body["id"]),
            type=str(body["type"]),
            object=dict(body["data"]["object"]),
            created=body.get("created"),
        )
    except (ValueError, KeyError, TypeError) as e:
        raise ValidationError(f"Malformed webhook payload: {e}") from e


# =============================================================================
# Stripe
# =============================================================================


def _flatten_params(params: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Encode nested dicts/lists in Stripe's bracket form (``a[b][0]=c``)."""
    items: List[Tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            items.extend(_flatten_params(value, name))
        elif isinstance(value, (list, tuple)):
            for i, item in enumerate(value):
                if isinstance(item, dict):
                    items.extend(_flatten_params(item, f"{name}[{i}]"))
                else:
                    items.append((f"{name}[{i}]", str(item)))
        elif isinstance(value, bool):
            items.append((name, "true" if value else "false"))
        else:
            items.append((name, str(value)))
    return items


def _intent_from_json(data: Dict[str, Any]) -> PaymentIntentInfo:
    error = data.get("last_payment_error") or {}
    return PaymentIntentInfo(
        id=data["id"],
        status=data["status"],
        amount=data.get("amount"),
        amount_capturable=data.get("amount_capturable"),
        currency=data.get("currency"),
        metadata=data.get("metadata") or {},
        last_payment_error=error.get("code") or error.get("message"),
    )


class StripeGateway:
    """Stripe REST client with manual-capture semantics.

    Every call is bounded by ``timeout``; a timeout surfaces as a
    GatewayError with ``timed_out=True`` and implies nothing about the
    gateway-side outcome.
    """

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        api_base: str = STRIPE_API_BASE,
        timeout: float = DEFAULT_TIMEOUT,
        webhook_tolerance: int = DEFAULT_WEBHOOK_TOLERANCE,
        http_client: Optional[httpx.Client] = None,
    ):
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance
        self._client = http_client or httpx.Client(
            base_url=api_base,
            auth=(secret_key, ""),
            timeout=timeout,
        )

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            if method == "GET":
                response = self._client.get(path, params=params, headers=headers)
            else:
                response = self._client.post(
                    path, data=dict(_flatten_params(params or {})), headers=headers
                )
        except httpx.TimeoutException as e:
            logger.warning(f"Stripe {method} {path} timed out: {e}")
            raise GatewayError(
                "Payment gateway timed out; outcome unknown until next sync", timed_out=True
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Stripe {method} {path} network error: {e}")
            raise GatewayError(f"Payment gateway unreachable: {e}") from e

        if response.status_code >= 400:
            try:
                err = response.json().get("error", {})
            except ValueError:
                err = {}
            message = err.get("message") or f"HTTP {response.status_code}"
            logger.error(f"Stripe {method} {path} failed ({response.status_code}): {message}")
            raise GatewayError(
                f"Payment gateway error: {message}",
                gateway_code=err.get("code") or err.get("type"),
            )
        return response.json()

    def create_hold(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        description: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentHold:
        minor = to_minor_units(amount, currency)

        if success_url and cancel_url:
            session = self._request(
                "POST",
                "/v1/checkout/sessions",
                {
                    "mode": "payment",
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                    "metadata": metadata,
                    "line_items": [
                        {
                            "quantity": 1,
                            "price_data": {
                                "currency": currency,
                                "unit_amount": minor,
                                "product_data": {"name": description or "Escrow deposit"},
                            },
                        }
                    ],
                    "payment_intent_data": {
                        "capture_method": "manual",
                        "metadata": metadata,
                        "description": description,
                    },
                },
                idempotency_key=idempotency_key,
            )
            return PaymentHold(
                intent_id=session.get("payment_intent"),
                client_reference=session["id"],
                checkout_url=session.get("url"),
            )

        intent = self._request(
            "POST",
            "/v1/payment_intents",
            {
                "amount": minor,
                "currency": currency,
                "capture_method": "manual",
                "automatic_payment_methods": {"enabled": True},
                "metadata": metadata,
                "description": description,
            },
            idempotency_key=idempotency_key,
        )
        return PaymentHold(intent_id=intent["id"], client_secret=intent.get("client_secret"))

    def retrieve_intent(self, intent_id: str) -> PaymentIntentInfo:
        return _intent_from_json(self._request("GET", f"/v1/payment_intents/{intent_id}"))

    def retrieve_session(self, session_id: str) -> CheckoutSessionInfo:
        data = self._request("GET", f"/v1/checkout/sessions/{session_id}")
        intent = data.get("payment_intent")
        if isinstance(intent, dict):
            intent = intent.get("id")
        return CheckoutSessionInfo(
            id=data["id"],
            intent_id=intent,
            url=data.get("url"),
            status=data.get("status"),
            payment_status=data.get("payment_status"),
        )

    def capture(self, intent_id: str, idempotency_key: Optional[str] = None) -> CaptureResult:
        data = self._request(
            "POST",
            f"/v1/payment_intents/{intent_id}/capture",
            idempotency_key=idempotency_key,
        )
        return CaptureResult(intent_id=data["id"], status=data["status"])

    def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        return verify_webhook_signature(
            payload, signature, self.webhook_secret, tolerance=self.webhook_tolerance
        )


# =============================================================================
# In-memory gateway
# =============================================================================


class InMemoryPaymentGateway:
    """In-memory gateway for testing and local development.

    Intents start in ``requires_payment_method``; tests drive them with
    ``set_intent_status`` and ``complete_session``. Captures are recorded
    in ``capture_calls``.
    """

    def __init__(self, webhook_secret: str = "whsec_test"):
        self.webhook_secret = webhook_secret
        self.intents: Dict[str, PaymentIntentInfo] = {}
        self.sessions: Dict[str, CheckoutSessionInfo] = {}
        self.capture_calls: List[str] = []
        self.fail_next: Dict[str, GatewayError] = {}

    def fail_on(self, operation: str, error: Optional[GatewayError] = None) -> None:
        """Make the next call to ``operation`` raise."""
        self.fail_next[operation] = error or GatewayError(f"{operation} failed")

    def _maybe_fail(self, operation: str) -> None:
        error = self.fail_next.pop(operation, None)
        if error is not None:
            raise error

    def set_intent_status(
        self, intent_id: str, status: str, last_payment_error: Optional[str] = None
    ) -> None:
        self.intents[intent_id].status = status
        self.intents[intent_id].last_payment_error = last_payment_error

    def complete_session(self, session_id: str, intent_status: str = "requires_capture") -> str:
        """Simulate the buyer paying on the hosted page. Returns the intent id."""
        session = self.sessions[session_id]
        intent_id = f"pi_{uuid.uuid4().hex[:24]}"
        self.intents[intent_id] = PaymentIntentInfo(id=intent_id, status=intent_status)
        session.intent_id = intent_id
        session.status = "complete"
        return intent_id

    def create_hold(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        description: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentHold:
        self._maybe_fail("create_hold")
        if success_url and cancel_url:
            session_id = f"cs_{uuid.uuid4().hex[:24]}"
            url = f"https://checkout.test/{session_id}"
            self.sessions[session_id] = CheckoutSessionInfo(id=session_id, url=url, status="open")
            return PaymentHold(client_reference=session_id, checkout_url=url)

        intent_id = f"pi_{uuid.uuid4().hex[:24]}"
        self.intents[intent_id] = PaymentIntentInfo(
            id=intent_id,
            status="requires_payment_method",
            amount=to_minor_units(amount, currency),
            currency=currency,
            metadata=dict(metadata),
        )
        return PaymentHold(intent_id=intent_id, client_secret=f"{intent_id}_secret_test")

    def retrieve_intent(self, intent_id: str) -> PaymentIntentInfo:
        self._maybe_fail("retrieve_intent")
        intent = self.intents.get(intent_id)
        if intent is None:
            raise GatewayError(f"No such payment_intent: {intent_id}", gateway_code="resource_missing")
        return PaymentIntentInfo(**{**vars(intent), "metadata": dict(intent.metadata)})

    def retrieve_session(self, session_id: str) -> CheckoutSessionInfo:
        self._maybe_fail("retrieve_session")
        session = self.sessions.get(session_id)
        if session is None:
            raise GatewayError(f"No such checkout session: {session_id}", gateway_code="resource_missing")
        return CheckoutSessionInfo(**vars(session))

    def capture(self, intent_id: str, idempotency_key: Optional[str] = None) -> CaptureResult:
        self.capture_calls.append(intent_id)
        self._maybe_fail("capture")
        intent = self.intents.get(intent_id)
        if intent is None or intent.status != "requires_capture":
            raise GatewayError(
                f"PaymentIntent {intent_id} cannot be captured",
                gateway_code="payment_intent_unexpected_state",
            )
        intent.status = "succeeded"
        return CaptureResult(intent_id=intent_id, status="succeeded")

    def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        return verify_webhook_signature(payload, signature, self.webhook_secret)
