"""Escrow routes.

Thin handlers: validate the request, call the reconciler off the event loop
(gateway and database calls block), and shape the response. Domain errors
are rendered by the EscrowError handler installed in main.
"""

import asyncio
from typing import Literal

from fastapi import APIRouter, Query, Request, status

from agrotrust.escrow import EscrowError

from ..auth import CurrentUser
from ..dependencies import Reconciler
from ..logging_config import get_logger, log_escrow_operation
from ..models import (
    ERROR_RESPONSES,
    EscrowEventResponse,
    EscrowEventsResponse,
    EscrowInitRequest,
    EscrowInitResponse,
    EscrowReleaseRequest,
    EscrowReleaseResponse,
    EscrowResponse,
)
from ..rate_limit import limiter

logger = get_logger("agrotrust.escrow")
router = APIRouter(prefix="/escrow", tags=["escrow"], responses=ERROR_RESPONSES)


@router.post("/init", response_model=EscrowInitResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def init_escrow(
    request: Request,
    body: EscrowInitRequest,
    auth: CurrentUser,
    reconciler: Reconciler,
):
    """
    Open an escrow for an RFQ.

    Creates the local record and a manual-capture hold with the payment
    gateway. Returns the client secret (payment_intent flow) or the hosted
    checkout URL (checkout flow) the buyer needs to authorize funds.
    """
    logger.info(f"POST /escrow/init | rfq={body.rfq_id} | user={auth.user_id}")
    try:
        result = await asyncio.to_thread(
            reconciler.init,
            body.rfq_id,
            body.buyer_id,
            body.cooperative_id,
            body.amount,
            body.currency,
            body.lot_id,
            auth.actor,
        )
    except EscrowError as e:
        log_escrow_operation("init", None, auth.user_id, False, f"rfq={body.rfq_id} {e.code}")
        raise

    log_escrow_operation("init", result.escrow.id, auth.user_id, True, f"rfq={body.rfq_id}")
    return EscrowInitResponse(
        escrow_id=result.escrow.id,
        status=result.escrow.status.value,
        payment_intent_id=result.escrow.payment_intent_id,
        client_secret=result.client_secret,
        checkout_url=result.checkout_url,
    )


@router.get("/{escrow_id}", response_model=EscrowResponse)
@limiter.limit("60/minute")
async def get_escrow(
    request: Request,
    escrow_id: str,
    auth: CurrentUser,
    reconciler: Reconciler,
    sync: bool = Query(default=False, description="Reconcile with the gateway first"),
    result: Literal["success", "cancel"] | None = Query(
        default=None, description="Checkout redirect outcome"
    ),
):
    """
    Get an escrow.

    ``result=cancel`` applies a buyer cancel if the escrow is still awaiting
    payment. ``sync=true`` or ``result=success`` reconciles with the gateway
    before returning.
    """
    if result == "cancel":
        record = await asyncio.to_thread(reconciler.cancel, escrow_id, auth.actor)
        log_escrow_operation("cancel", escrow_id, auth.user_id, True, record.status.value)
    elif sync or result == "success":
        record = await asyncio.to_thread(reconciler.sync, escrow_id, auth.actor)
        log_escrow_operation("sync", escrow_id, auth.user_id, True, record.status.value)
    else:
        record = await asyncio.to_thread(reconciler.get, escrow_id, auth.actor)
    return EscrowResponse.from_record(record)


@router.get("/{escrow_id}/events", response_model=EscrowEventsResponse)
@limiter.limit("30/minute")
async def list_escrow_events(
    request: Request,
    escrow_id: str,
    auth: CurrentUser,
    reconciler: Reconciler,
):
    """Audit timeline for an escrow, oldest first."""
    events = await asyncio.to_thread(reconciler.list_events, escrow_id, auth.actor)
    return EscrowEventsResponse(
        events=[EscrowEventResponse.from_event(e) for e in events],
        total=len(events),
    )


@router.post("/{escrow_id}/release", response_model=EscrowReleaseResponse)
@limiter.limit("10/minute")
async def release_escrow(
    request: Request,
    escrow_id: str,
    auth: CurrentUser,
    reconciler: Reconciler,
    body: EscrowReleaseRequest | None = None,
):
    """
    Release (capture) held funds to the cooperative.

    Requires an admin or inspector role. If capture succeeds but the local
    update fails, the response says so explicitly (500,
    FUNDS_CAPTURED_BOOKKEEPING_FAILED) so an operator can reconcile.
    """
    body = body or EscrowReleaseRequest()
    logger.info(f"POST /escrow/{escrow_id}/release | user={auth.user_id} role={auth.role}")
    try:
        record = await asyncio.to_thread(
            reconciler.release,
            escrow_id,
            auth.actor,
            body.inspector_id,
            body.notes,
        )
    except EscrowError as e:
        log_escrow_operation("release", escrow_id, auth.user_id, False, e.code)
        raise

    log_escrow_operation("release", escrow_id, auth.user_id, True, record.payment_intent_id)
    return EscrowReleaseResponse(
        escrow=EscrowResponse.from_record(record),
        released_at=record.released_at,
    )
