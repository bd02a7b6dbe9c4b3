"""Pydantic models for API requests and responses.

JSON field names are camelCase to match the web client.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agrotrust.escrow import EscrowEvent, EscrowRecord


class CamelModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


_ID = {"min_length": 1, "max_length": 128}


# =============================================================================
# Request Models
# =============================================================================


class EscrowInitRequest(CamelModel):
    """Request to open an escrow for an RFQ."""

    rfq_id: str = Field(..., **_ID)
    buyer_id: str = Field(..., **_ID)
    cooperative_id: str = Field(..., **_ID)
    lot_id: str | None = Field(default=None, **_ID)
    amount: Decimal = Field(..., gt=0, max_digits=14, allow_inf_nan=False)
    currency: str | None = Field(default=None, pattern=r"^\s*[A-Za-z]{3}\s*$")


class EscrowReleaseRequest(CamelModel):
    """Optional inspection metadata recorded with a release."""

    inspector_id: str | None = Field(default=None, **_ID)
    notes: str | None = Field(default=None, max_length=2000)


# =============================================================================
# Response Models
# =============================================================================


class EscrowInitResponse(CamelModel):
    """Result of escrow init: what the client needs to collect payment."""

    escrow_id: str
    status: str
    payment_intent_id: str | None = None
    client_secret: str | None = None  # payment_intent flow
    checkout_url: str | None = None  # checkout flow


class EscrowResponse(CamelModel):
    """Escrow record."""

    id: str
    rfq_id: str
    lot_id: str | None = None
    buyer_id: str
    cooperative_id: str
    amount: Decimal
    currency: str
    status: str  # awaiting_payment, authorized, released, cancelled, failed
    payment_provider: str
    payment_intent_id: str | None = None
    client_reference: str | None = None
    created_at: datetime
    updated_at: datetime
    released_at: datetime | None = None

    @classmethod
    def from_record(cls, record: EscrowRecord) -> "EscrowResponse":
        return cls(
            id=record.id,
            rfq_id=record.rfq_id,
            lot_id=record.lot_id,
            buyer_id=record.buyer_id,
            cooperative_id=record.cooperative_id,
            amount=record.amount,
            currency=record.currency,
            status=record.status.value,
            payment_provider=record.payment_provider,
            payment_intent_id=record.payment_intent_id,
            client_reference=record.client_reference,
            created_at=record.created_at,
            updated_at=record.updated_at,
            released_at=record.released_at,
        )


class EscrowReleaseResponse(CamelModel):
    """Released escrow."""

    escrow: EscrowResponse
    released_at: datetime | None = None


class EscrowEventResponse(CamelModel):
    """Audit log entry."""

    id: str
    type: str
    actor_id: str | None = None
    payload: dict[str, Any] = {}
    created_at: datetime

    @classmethod
    def from_event(cls, event: EscrowEvent) -> "EscrowEventResponse":
        return cls(
            id=event.id,
            type=event.type,
            actor_id=event.actor_id,
            payload=event.payload,
            created_at=event.created_at,
        )


class EscrowEventsResponse(CamelModel):
    """Escrow audit timeline, oldest first."""

    events: list[EscrowEventResponse]
    total: int


class WebhookResponse(CamelModel):
    """Acknowledgement returned to the payment gateway."""

    received: bool = True
    handled: bool = False
    event_id: str
    escrow_id: str | None = None
    applied_status: str | None = None


class ErrorResponse(BaseModel):
    """Error body for every failed request."""

    error: str
    message: str
    details: dict[str, Any] = {}


# Documented on every router; rendered by the EscrowError handler
ERROR_RESPONSES = {
    code: {"model": ErrorResponse}
    for code in (400, 401, 403, 404, 409, 500, 502)
}
