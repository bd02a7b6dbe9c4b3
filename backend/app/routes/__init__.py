"""API routes."""

from .escrow import router as escrow_router
from .webhooks import router as webhooks_router

__all__ = [
    "escrow_router",
    "webhooks_router",
]
