"""
Escrow reconciler - the escrow state machine.

Creates escrow holds, advances their status from gateway signals (polling
or webhooks), and releases (captures) held funds.

State machine:
    awaiting_payment -> authorized -> released
    awaiting_payment -> cancelled | failed
    authorized       -> cancelled

Status only moves forward. Every change to ``status`` or
``payment_intent_id`` is paired with one audit event, including failure
paths after a partially committed external effect.

Concurrency: there is no lock. Writes are conditional on the status that
was read (compare-and-swap); sync and webhook writes only happen when the
derived value differs from what is stored.
"""

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from agrotrust.escrow.errors import (
    ConcurrentUpdateError,
    DuplicateEscrowError,
    ForbiddenError,
    FundsCapturedError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from agrotrust.escrow.gateway import (
    ZERO_DECIMAL_CURRENCIES,
    CheckoutSessionInfo,
    PaymentGateway,
    PaymentIntentInfo,
)
from agrotrust.escrow.models import (
    Actor,
    EscrowEvent,
    EscrowEventType,
    EscrowRecord,
    EscrowStatus,
    can_transition,
    utc_now,
)
from agrotrust.escrow.storage import EscrowStorage

logger = logging.getLogger(__name__)

PAYMENT_FLOW_INTENT = "payment_intent"
PAYMENT_FLOW_CHECKOUT = "checkout"

_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")
_CURRENCY_PATTERN = re.compile(r"^[a-z]{3}$")

# Fits escrows.amount numeric(14, 2) and the gateway's integer minor units
MAX_AMOUNT = Decimal("999999999999.99")

# Gateway vocabulary -> local status. Nothing outside this module reads
# gateway-native status strings.
WEBHOOK_STATUS_MAP: Dict[str, Optional[EscrowStatus]] = {
    "payment_intent.amount_capturable_updated": EscrowStatus.AUTHORIZED,
    "payment_intent.payment_failed": EscrowStatus.FAILED,
    "payment_intent.canceled": EscrowStatus.CANCELLED,
    # Released is driven only by an explicit release()
    "payment_intent.succeeded": None,
}

CAPTURABLE_STATUS = "requires_capture"
CAPTURED_STATUSES = frozenset({"succeeded", "processing"})


def map_intent_status(intent: PaymentIntentInfo) -> Optional[EscrowStatus]:
    """Map a polled payment intent to the local status it implies, if any."""
    if intent.status == CAPTURABLE_STATUS:
        return EscrowStatus.AUTHORIZED
    if intent.status == "canceled":
        return EscrowStatus.CANCELLED
    # A fresh intent also sits in requires_payment_method; only a declined
    # attempt counts as failure.
    if intent.status == "requires_payment_method" and intent.last_payment_error:
        return EscrowStatus.FAILED
    return None


def map_session_status(session: CheckoutSessionInfo) -> Optional[EscrowStatus]:
    """An expired checkout session that never produced an intent is cancelled."""
    if session.intent_id is None and session.status == "expired":
        return EscrowStatus.CANCELLED
    return None


@dataclass
class EscrowConfig:
    """Escrow behaviour settings."""

    release_roles: frozenset = frozenset({"admin", "inspector"})
    default_currency: str = "usd"
    site_url: str = "http://localhost:5173"
    payment_flow: str = PAYMENT_FLOW_INTENT

    def __post_init__(self):
        self.release_roles = frozenset(self.release_roles)
        if self.payment_flow not in (PAYMENT_FLOW_INTENT, PAYMENT_FLOW_CHECKOUT):
            raise ValueError(f"Unknown payment flow: {self.payment_flow}")


@dataclass
class InitResult:
    escrow: EscrowRecord
    client_secret: Optional[str] = None
    checkout_url: Optional[str] = None


@dataclass
class WebhookOutcome:
    """What a webhook delivery did."""

    event_id: str
    event_type: str
    escrow_id: Optional[str] = None
    handled: bool = False
    applied_status: Optional[EscrowStatus] = None
    details: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Input validation
# =============================================================================


def _require_id(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required.", field=name)
    value = value.strip()
    if not _ID_PATTERN.match(value):
        raise ValidationError(f"{name} is not a valid identifier.", field=name)
    return value


def _parse_currency(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("currency must be a string.", field="currency")
    currency = value.strip().lower()
    if not _CURRENCY_PATTERN.match(currency):
        raise ValidationError("currency must be a 3-letter code.", field="currency")
    return currency


def _parse_amount(value: Any, currency: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise ValidationError("amount must be a positive number.", field="amount")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError("amount must be a positive number.", field="amount")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("amount must be a positive number.", field="amount")

    if amount > MAX_AMOUNT:
        raise ValidationError(f"amount must not exceed {MAX_AMOUNT}.", field="amount")

    places = 0 if currency in ZERO_DECIMAL_CURRENCIES else 2
    try:
        exact = amount == amount.quantize(Decimal(1).scaleb(-places))
    except InvalidOperation:
        exact = False
    if not exact:
        raise ValidationError(
            f"amount has more than {places} decimal places for {currency}.", field="amount"
        )
    return amount


# =============================================================================
# Reconciler
# =============================================================================


class EscrowReconciler:
    """Escrow lifecycle operations over injected storage and gateway."""

    def __init__(
        self,
        storage: EscrowStorage,
        gateway: PaymentGateway,
        config: Optional[EscrowConfig] = None,
    ):
        self.storage = storage
        self.gateway = gateway
        self.config = config or EscrowConfig()

    # === Helpers ===

    def _is_elevated(self, actor: Optional[Actor]) -> bool:
        return actor is not None and actor.role in self.config.release_roles

    def _get_record(self, escrow_id: str) -> EscrowRecord:
        record = self.storage.get(escrow_id)
        if record is None:
            raise NotFoundError(f"Escrow {escrow_id} not found")
        return record

    def _check_read_access(self, record: EscrowRecord, actor: Optional[Actor]) -> None:
        if actor is None or self._is_elevated(actor):
            return
        if actor.user_id in (record.buyer_id, record.cooperative_id):
            return
        raise NotFoundError(f"Escrow {record.id} not found")

    def _append_event(
        self,
        escrow_id: str,
        event_type: str,
        actor_id: Optional[str],
        payload: Dict[str, Any],
    ) -> None:
        self.storage.append_event(
            EscrowEvent(escrow_id=escrow_id, type=event_type, actor_id=actor_id, payload=payload)
        )

    # === Read ===

    def get(self, escrow_id: str, actor: Optional[Actor] = None) -> EscrowRecord:
        """Get an escrow the actor is allowed to see."""
        record = self._get_record(escrow_id)
        self._check_read_access(record, actor)
        return record

    def list_events(self, escrow_id: str, actor: Optional[Actor] = None) -> List[EscrowEvent]:
        """Audit timeline for an escrow, oldest first."""
        self.get(escrow_id, actor)
        return self.storage.list_events(escrow_id)

    # === Init ===

    def init(
        self,
        rfq_id: Any,
        buyer_id: Any,
        cooperative_id: Any,
        amount: Any,
        currency: Any = None,
        lot_id: Any = None,
        actor: Optional[Actor] = None,
    ) -> InitResult:
        """Create an escrow for an RFQ and request a manual-capture hold.

        Raises:
            ValidationError: malformed input or RFQ/party mismatch
            NotFoundError: RFQ missing or not the caller's
            DuplicateEscrowError: an active escrow exists for the RFQ
            GatewayError: hold creation failed (record is marked failed)
        """
        rfq_id = _require_id(rfq_id, "rfq_id")
        buyer_id = _require_id(buyer_id, "buyer_id")
        cooperative_id = _require_id(cooperative_id, "cooperative_id")
        currency = _parse_currency(self.config.default_currency if currency is None else currency)
        amount = _parse_amount(amount, currency)
        if lot_id is not None:
            lot_id = _require_id(lot_id, "lot_id")

        rfq = self.storage.get_rfq(rfq_id)
        if rfq is None:
            raise NotFoundError("RFQ not found.")
        if actor is not None and not self._is_elevated(actor) and rfq.buyer_id != actor.user_id:
            raise NotFoundError("RFQ not found.")
        if not rfq.cooperative_id:
            raise ValidationError("RFQ has no cooperative_id.", field="cooperative_id")
        if buyer_id != rfq.buyer_id:
            raise ValidationError("buyer_id does not match the RFQ.", field="buyer_id")
        if cooperative_id != rfq.cooperative_id:
            raise ValidationError("cooperative_id does not match the RFQ.", field="cooperative_id")

        existing = self.storage.find_active_by_rfq(rfq_id)
        if existing is not None:
            raise DuplicateEscrowError(
                f"RFQ {rfq_id} already has an active escrow ({existing.id}).",
                local_status=existing.status.value,
            )

        actor_id = actor.user_id if actor else None
        record = self.storage.create(
            EscrowRecord(
                rfq_id=rfq_id,
                lot_id=lot_id or rfq.lot_id,
                buyer_id=buyer_id,
                cooperative_id=cooperative_id,
                amount=amount,
                currency=currency,
            )
        )
        logger.info(f"Created escrow {record.id} for RFQ {rfq_id} ({amount} {currency})")

        metadata = {
            "escrow_id": record.id,
            "rfq_id": rfq_id,
            "buyer_id": buyer_id,
            "cooperative_id": cooperative_id,
        }
        description = f"AgroTrust escrow for {rfq.product_name or 'RFQ ' + rfq_id}"
        if rfq.quantity_kg is not None:
            description += f" ({rfq.quantity_kg} kg)"

        success_url = cancel_url = None
        if self.config.payment_flow == PAYMENT_FLOW_CHECKOUT:
            base = self.config.site_url.rstrip("/")
            success_url = f"{base}/escrow/{record.id}?result=success"
            cancel_url = f"{base}/escrow/{record.id}?result=cancel"

        try:
            hold = self.gateway.create_hold(
                amount,
                currency,
                metadata,
                description=description,
                success_url=success_url,
                cancel_url=cancel_url,
                idempotency_key=f"escrow-init-{record.id}",
            )
        except GatewayError as e:
            self._fail_init(record, actor_id, e)
            raise

        fields = {}
        if hold.intent_id:
            fields["payment_intent_id"] = hold.intent_id
        if hold.client_reference:
            fields["client_reference"] = hold.client_reference

        event_payload = {
            "payment_intent_id": hold.intent_id,
            "client_reference": hold.client_reference,
            "amount": str(amount),
            "currency": currency,
            "payment_flow": self.config.payment_flow,
        }
        if fields:
            try:
                record = self.storage.update(
                    record.id, fields, expected_status=EscrowStatus.AWAITING_PAYMENT
                )
            except PersistenceError as e:
                # The hold exists; webhooks carry escrow_id and can still
                # attach the intent later.
                logger.error(f"Escrow {record.id}: hold created but not saved: {e}")
                self._append_event(
                    record.id,
                    EscrowEventType.INIT_FAILED,
                    actor_id,
                    {**event_payload, "error": str(e), "stage": "persist_hold"},
                )
                raise

        self._append_event(record.id, EscrowEventType.CREATED, actor_id, event_payload)
        if hold.checkout_url:
            self._append_event(
                record.id,
                EscrowEventType.CHECKOUT_SESSION_CREATED,
                actor_id,
                {"session_id": hold.client_reference, "checkout_url": hold.checkout_url},
            )
        return InitResult(escrow=record, client_secret=hold.client_secret, checkout_url=hold.checkout_url)

    def _fail_init(self, record: EscrowRecord, actor_id: Optional[str], error: GatewayError) -> None:
        logger.error(f"Escrow {record.id}: gateway hold failed: {error}")
        try:
            self.storage.update(
                record.id,
                {"status": EscrowStatus.FAILED},
                expected_status=EscrowStatus.AWAITING_PAYMENT,
            )
        except PersistenceError:
            logger.exception(f"Escrow {record.id}: could not mark failed after gateway error")
        self._append_event(
            record.id,
            EscrowEventType.INIT_FAILED,
            actor_id,
            {
                "error": error.message,
                "timed_out": error.timed_out,
                "gateway_code": error.gateway_code,
                "stage": "create_hold",
            },
        )

    # === Sync ===

    def sync(self, escrow_id: str, actor: Optional[Actor] = None) -> EscrowRecord:
        """Reconcile an escrow against the gateway's live state.

        Writes and logs a ``sync`` event only when the derived
        ``(payment_intent_id, status)`` differs from what is stored.
        """
        record = self.get(escrow_id, actor)
        return self._reconcile(record, actor.user_id if actor else None)

    def _reconcile(self, record: EscrowRecord, actor_id: Optional[str]) -> EscrowRecord:
        if record.is_terminal:
            return record

        intent_id = record.payment_intent_id
        gateway_status = None
        target = None

        if intent_id is None and record.client_reference:
            session = self.gateway.retrieve_session(record.client_reference)
            intent_id = session.intent_id
            gateway_status = f"session:{session.status}"
            target = map_session_status(session)

        if intent_id:
            intent = self.gateway.retrieve_intent(intent_id)
            gateway_status = intent.status
            target = map_intent_status(intent)

        fields: Dict[str, Any] = {}
        if intent_id and record.payment_intent_id is None:
            fields["payment_intent_id"] = intent_id
        if target is not None and can_transition(record.status, target):
            fields["status"] = target

        if not fields:
            return record

        try:
            updated = self.storage.update(record.id, fields, expected_status=record.status)
        except ConcurrentUpdateError:
            logger.info(f"Escrow {record.id}: changed during sync, keeping newer state")
            return self._get_record(record.id)

        logger.info(
            f"Escrow {record.id}: sync {record.status.value} -> {updated.status.value} "
            f"(gateway {gateway_status})"
        )
        self._append_event(
            record.id,
            EscrowEventType.SYNC,
            actor_id,
            {
                "before": {
                    "status": record.status.value,
                    "payment_intent_id": record.payment_intent_id,
                },
                "after": {
                    "status": updated.status.value,
                    "payment_intent_id": updated.payment_intent_id,
                },
                "gateway_status": gateway_status,
            },
        )
        return updated

    # === Cancel ===

    def cancel(self, escrow_id: str, actor: Actor) -> EscrowRecord:
        """Buyer-initiated cancel while still awaiting payment.

        Syncs first so a hold that was already authorized is never cancelled
        locally. Any other status is returned unchanged.
        """
        record = self.get(escrow_id, actor)
        if actor.user_id != record.buyer_id and not self._is_elevated(actor):
            raise ForbiddenError("Only the buyer can cancel this escrow.")
        if record.status != EscrowStatus.AWAITING_PAYMENT:
            return record

        record = self._reconcile(record, actor.user_id)
        if record.status != EscrowStatus.AWAITING_PAYMENT:
            return record

        try:
            updated = self.storage.update(
                record.id,
                {"status": EscrowStatus.CANCELLED},
                expected_status=EscrowStatus.AWAITING_PAYMENT,
            )
        except ConcurrentUpdateError:
            return self._get_record(record.id)

        logger.info(f"Escrow {record.id}: cancelled by {actor.user_id}")
        self._append_event(
            record.id,
            EscrowEventType.CANCELLED,
            actor.user_id,
            {"reason": "buyer_cancelled", "payment_intent_id": record.payment_intent_id},
        )
        return updated

    # === Release ===

    def release(
        self,
        escrow_id: str,
        actor: Optional[Actor],
        inspector_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> EscrowRecord:
        """Capture held funds and mark the escrow released.

        Capture is attempted only when the local status is ``authorized`` or
        the gateway independently reports the intent as capturable.

        Raises:
            ForbiddenError: caller lacks a release role
            NotFoundError: unknown escrow
            InvalidStateError: no intent, terminal status, or not capturable
            GatewayError: capture failed; local status unchanged
            FundsCapturedError: capture succeeded but the local write failed
        """
        if not self._is_elevated(actor):
            raise ForbiddenError("Releasing escrow requires an admin or inspector role.")

        record = self._get_record(escrow_id)
        if record.is_terminal:
            raise InvalidStateError(
                f"Escrow is already {record.status.value}.", local_status=record.status.value
            )
        if not record.payment_intent_id:
            raise InvalidStateError(
                "Escrow has no payment intent yet; sync before releasing.",
                local_status=record.status.value,
            )

        intent_id = record.payment_intent_id
        gateway_status = None
        if record.status != EscrowStatus.AUTHORIZED:
            gateway_status = self.gateway.retrieve_intent(intent_id).status
            if gateway_status != CAPTURABLE_STATUS:
                raise InvalidStateError(
                    f"Escrow is not capturable (local {record.status.value}, "
                    f"gateway {gateway_status}).",
                    local_status=record.status.value,
                    gateway_status=gateway_status,
                )

        try:
            capture = self.gateway.capture(intent_id)
        except GatewayError as e:
            logger.error(f"Escrow {record.id}: capture of {intent_id} failed: {e}")
            self._append_event(
                record.id,
                EscrowEventType.RELEASE_FAILED,
                actor.user_id,
                {
                    "payment_intent_id": intent_id,
                    # authorized locally means the gateway last reported requires_capture
                    "gateway_status": gateway_status or CAPTURABLE_STATUS,
                    "gateway_code": e.gateway_code,
                    "error": e.message,
                    "timed_out": e.timed_out,
                },
            )
            raise

        if capture.status not in CAPTURED_STATUSES:
            self._append_event(
                record.id,
                EscrowEventType.RELEASE_FAILED,
                actor.user_id,
                {
                    "payment_intent_id": intent_id,
                    "gateway_status": capture.status,
                    "error": "unexpected capture status",
                },
            )
            raise GatewayError(f"Capture returned unexpected status {capture.status}")

        released_at = utc_now()
        updated = self._commit_release(record, released_at, actor.user_id)
        logger.info(f"Escrow {record.id}: released ({intent_id}) by {actor.user_id}")

        try:
            self._append_event(
                record.id,
                EscrowEventType.RELEASED,
                actor.user_id,
                {
                    "payment_intent_id": intent_id,
                    "released_at": released_at.isoformat(),
                    "capture_status": capture.status,
                    "inspector_id": inspector_id,
                    "notes": notes,
                },
            )
        except PersistenceError:
            # Status is already durable as released.
            logger.exception(f"Escrow {record.id}: released but audit event not written")
        return updated

    def _commit_release(self, record: EscrowRecord, released_at, actor_id: str) -> EscrowRecord:
        """Write ``released`` after a successful capture.

        A concurrent non-terminal change (e.g. a sync moving awaiting_payment
        to authorized) is retried once; anything else is reported as
        divergence rather than overwritten.
        """
        fields = {"status": EscrowStatus.RELEASED, "released_at": released_at}
        expected = record.status
        cause = "unknown"
        for _ in range(2):
            try:
                return self.storage.update(record.id, fields, expected_status=expected)
            except ConcurrentUpdateError:
                try:
                    current = self.storage.get(record.id)
                except PersistenceError as e:
                    cause = f"re-read failed: {e}"
                    break
                if current is None or current.is_terminal:
                    cause = f"status changed concurrently to {current.status.value if current else 'missing'}"
                    break
                expected = current.status
                cause = "concurrent update"
            except (PersistenceError, NotFoundError) as e:
                cause = str(e)
                break

        logger.critical(
            f"Escrow {record.id}: funds captured ({record.payment_intent_id}) but "
            f"local update failed: {cause}"
        )
        try:
            self._append_event(
                record.id,
                EscrowEventType.RELEASED_DB_UPDATE_FAILED,
                actor_id,
                {
                    "payment_intent_id": record.payment_intent_id,
                    "released_at": released_at.isoformat(),
                    "error": cause,
                },
            )
        except PersistenceError:
            logger.exception(f"Escrow {record.id}: audit event for captured funds not written")
        raise FundsCapturedError(record.id, record.payment_intent_id, cause)

    # === Webhooks ===

    def handle_webhook(self, payload: bytes, signature: str) -> WebhookOutcome:
        """Verify and apply a gateway webhook.

        Every payment-intent notification for a known escrow is logged, even
        when it maps to no transition. Replays are harmless: a stale status
        never overwrites a more advanced one.
        """
        event = self.gateway.verify_webhook(payload, signature)
        outcome = WebhookOutcome(event_id=event.id, event_type=event.type)

        is_intent_event = event.type.startswith("payment_intent.")
        is_session_event = event.type == "checkout.session.completed"
        escrow_id = event.metadata.get("escrow_id")
        if not (is_intent_event or is_session_event) or not escrow_id:
            logger.debug(f"Webhook {event.id} ({event.type}) ignored")
            return outcome

        outcome.escrow_id = escrow_id
        record = self.storage.get(escrow_id)
        if record is None:
            logger.warning(f"Webhook {event.id} references unknown escrow {escrow_id}")
            return outcome

        if is_intent_event:
            intent_id = event.object.get("id")
            gateway_status = event.object.get("status")
            target = WEBHOOK_STATUS_MAP.get(event.type)
        else:
            intent_id = event.object.get("payment_intent")
            gateway_status = event.object.get("payment_status")
            target = None

        if intent_id and record.payment_intent_id and intent_id != record.payment_intent_id:
            logger.warning(
                f"Webhook {event.id}: intent {intent_id} does not match escrow "
                f"{escrow_id} intent {record.payment_intent_id}"
            )
            outcome.details["intent_mismatch"] = True
            intent_id = None
            target = None

        previous_status = record.status
        for _ in range(2):
            fields: Dict[str, Any] = {}
            if intent_id and record.payment_intent_id is None:
                fields["payment_intent_id"] = intent_id
            if target is not None and can_transition(record.status, target):
                fields["status"] = target
            if not fields:
                break
            try:
                record = self.storage.update(escrow_id, fields, expected_status=record.status)
                outcome.applied_status = fields.get("status")
                break
            except ConcurrentUpdateError:
                record = self._get_record(escrow_id)

        if outcome.applied_status:
            logger.info(
                f"Escrow {escrow_id}: webhook {event.type} "
                f"{previous_status.value} -> {outcome.applied_status.value}"
            )

        self._append_event(
            escrow_id,
            event.type,
            None,
            {
                "event_id": event.id,
                "payment_intent_id": intent_id,
                "gateway_status": gateway_status,
                "previous_status": previous_status.value,
                "applied_status": outcome.applied_status.value if outcome.applied_status else None,
            },
        )
        outcome.handled = True
        return outcome
