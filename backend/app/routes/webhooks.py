"""Payment gateway webhook route.

Answers 200 once a delivery is verified and processed (the gateway retries
anything else), 400 for a bad signature or malformed payload, and 5xx when
the store is unavailable so the delivery is retried.
"""

import asyncio

from fastapi import APIRouter, Request

from ..dependencies import Reconciler
from ..logging_config import get_logger
from ..models import ERROR_RESPONSES, WebhookResponse

logger = get_logger("agrotrust.webhooks")
router = APIRouter(tags=["webhooks"], responses=ERROR_RESPONSES)

SIGNATURE_HEADER = "stripe-signature"


@router.post("/webhook", response_model=WebhookResponse)
async def payment_webhook(request: Request, reconciler: Reconciler):
    """Receive a signed payment gateway event."""
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER, "")

    outcome = await asyncio.to_thread(reconciler.handle_webhook, payload, signature)

    logger.info(
        f"WEBHOOK | {outcome.event_type} | {outcome.event_id} | "
        f"escrow={outcome.escrow_id or '-'} | handled={outcome.handled}"
    )
    return WebhookResponse(
        handled=outcome.handled,
        event_id=outcome.event_id,
        escrow_id=outcome.escrow_id,
        applied_status=outcome.applied_status.value if outcome.applied_status else None,
    )
