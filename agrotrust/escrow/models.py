"""
Escrow data models.

An EscrowRecord tracks one attempt to finance an RFQ: buyer funds are
authorized (held) with the payment gateway, then captured on release.
EscrowEvent rows form the append-only audit log for every state-affecting
action, including failures.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class EscrowStatus(str, Enum):
    """Escrow lifecycle states."""

    AWAITING_PAYMENT = "awaiting_payment"
    AUTHORIZED = "authorized"  # Funds held, not captured
    RELEASED = "released"  # Captured
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {EscrowStatus.RELEASED, EscrowStatus.CANCELLED, EscrowStatus.FAILED}
)

# Forward-only transitions. Terminal states have no outgoing edges.
VALID_ESCROW_TRANSITIONS: Dict[EscrowStatus, frozenset] = {
    EscrowStatus.AWAITING_PAYMENT: frozenset(
        {EscrowStatus.AUTHORIZED, EscrowStatus.CANCELLED, EscrowStatus.FAILED}
    ),
    EscrowStatus.AUTHORIZED: frozenset({EscrowStatus.RELEASED, EscrowStatus.CANCELLED}),
    EscrowStatus.RELEASED: frozenset(),
    EscrowStatus.CANCELLED: frozenset(),
    EscrowStatus.FAILED: frozenset(),
}


def is_terminal(status: EscrowStatus) -> bool:
    """Check whether a status can never change again."""
    return EscrowStatus(status) in TERMINAL_STATUSES


def can_transition(current: EscrowStatus, target: EscrowStatus) -> bool:
    """Check whether ``current -> target`` is a legal forward transition."""
    return EscrowStatus(target) in VALID_ESCROW_TRANSITIONS[EscrowStatus(current)]


class EscrowEventType:
    """Event type tags written to the audit log.

    Webhook deliveries are logged under the gateway's own event type
    (e.g. ``payment_intent.canceled``), so this is not a closed set.
    """

    CREATED = "created"
    INIT_FAILED = "escrow_init_failed"
    CHECKOUT_SESSION_CREATED = "checkout_session_created"
    SYNC = "sync"
    CANCELLED = "cancelled"
    RELEASED = "escrow_released"
    RELEASE_FAILED = "escrow_release_failed"
    RELEASED_DB_UPDATE_FAILED = "escrow_released_db_update_failed"


PAYMENT_PROVIDER = "stripe"


@dataclass
class Actor:
    """The authenticated caller of an escrow operation."""

    user_id: str
    role: str = "buyer"


@dataclass
class RfqRef:
    """The slice of an RFQ that escrow needs."""

    id: str
    buyer_id: str
    cooperative_id: Optional[str] = None
    lot_id: Optional[str] = None
    product_name: Optional[str] = None
    quantity_kg: Optional[Decimal] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RfqRef":
        quantity = data.get("quantity_kg")
        return cls(
            id=str(data["id"]),
            buyer_id=str(data["buyer_id"]),
            cooperative_id=data.get("cooperative_id"),
            lot_id=data.get("lot_id"),
            product_name=data.get("product_name"),
            quantity_kg=Decimal(str(quantity)) if quantity is not None else None,
        )


@dataclass
class EscrowRecord:
    """One escrow per trade financing attempt.

    ``amount`` is in major currency units and never changes after creation.
    ``payment_intent_id`` is assigned at most once.
    """

    rfq_id: str
    buyer_id: str
    cooperative_id: str
    amount: Decimal
    currency: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    lot_id: Optional[str] = None
    status: EscrowStatus = EscrowStatus.AWAITING_PAYMENT
    payment_provider: str = PAYMENT_PROVIDER
    payment_intent_id: Optional[str] = None
    client_reference: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    released_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = EscrowStatus(self.status)
        if not isinstance(self.amount, Decimal):
            self.amount = Decimal(str(self.amount))

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a database row."""
        return {
            "id": self.id,
            "rfq_id": self.rfq_id,
            "lot_id": self.lot_id,
            "buyer_id": self.buyer_id,
            "cooperative_id": self.cooperative_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "payment_provider": self.payment_provider,
            "payment_intent_id": self.payment_intent_id,
            "client_reference": self.client_reference,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "released_at": _iso(self.released_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscrowRecord":
        """Build a record from a database row."""
        return cls(
            id=str(data["id"]),
            rfq_id=str(data["rfq_id"]),
            lot_id=data.get("lot_id"),
            buyer_id=str(data["buyer_id"]),
            cooperative_id=str(data["cooperative_id"]),
            amount=Decimal(str(data["amount"])),
            currency=data["currency"],
            status=EscrowStatus(data["status"]),
            payment_provider=data.get("payment_provider") or PAYMENT_PROVIDER,
            payment_intent_id=data.get("payment_intent_id"),
            client_reference=data.get("client_reference"),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            updated_at=_parse_dt(data.get("updated_at")) or utc_now(),
            released_at=_parse_dt(data.get("released_at")),
        )


@dataclass
class EscrowEvent:
    """Audit log entry. ``actor_id`` is None for system/webhook actions."""

    escrow_id: str
    type: str
    actor_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "escrow_id": self.escrow_id,
            "actor_id": self.actor_id,
            "type": self.type,
            "payload": self.payload,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscrowEvent":
        return cls(
            id=str(data["id"]),
            escrow_id=str(data["escrow_id"]),
            actor_id=data.get("actor_id"),
            type=data["type"],
            payload=data.get("payload") or {},
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
        )
