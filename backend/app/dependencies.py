"""Wiring of the escrow reconciler for request handlers.

Storage and gateway clients are built once per process from settings and
injected; tests replace the whole reconciler via ``dependency_overrides``.
"""

from typing import Annotated

from fastapi import Depends

from agrotrust.escrow import (
    EscrowConfig,
    EscrowReconciler,
    StripeGateway,
    SupabaseEscrowStorage,
)

from .config import Settings, get_settings
from .database import get_supabase_client

_reconciler: EscrowReconciler | None = None


def build_reconciler(settings: Settings) -> EscrowReconciler:
    """Construct a reconciler over Supabase storage and the Stripe gateway."""
    gateway = StripeGateway(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        api_base=settings.stripe_api_base,
        timeout=settings.gateway_timeout_seconds,
        webhook_tolerance=settings.webhook_tolerance_seconds,
    )
    config = EscrowConfig(
        release_roles=frozenset(settings.release_roles),
        default_currency=settings.default_currency,
        site_url=settings.site_url,
        payment_flow=settings.payment_flow,
    )
    return EscrowReconciler(
        storage=SupabaseEscrowStorage(get_supabase_client(settings)),
        gateway=gateway,
        config=config,
    )


def get_reconciler(settings: Annotated[Settings, Depends(get_settings)]) -> EscrowReconciler:
    """FastAPI dependency for the escrow reconciler."""
    global _reconciler
    if _reconciler is None:
        _reconciler = build_reconciler(settings)
    return _reconciler


def close_reconciler() -> None:
    """Release the gateway's HTTP connections (application shutdown)."""
    global _reconciler
    if _reconciler is not None and isinstance(_reconciler.gateway, StripeGateway):
        _reconciler.gateway.close()
    _reconciler = None


# Type alias for dependency injection
Reconciler = Annotated[EscrowReconciler, Depends(get_reconciler)]
