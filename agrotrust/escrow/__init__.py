"""Escrow subsystem for AgroTrust.

Buyer funds for an RFQ are held (authorized, not captured) with the payment
gateway until an inspector or admin releases them to the cooperative.

Models:
- EscrowRecord: One escrow per trade financing attempt
- EscrowEvent: Append-only audit log entry
- EscrowStatus: Escrow lifecycle status

Storage:
- EscrowStorage: Persistence protocol (Supabase and in-memory backends)

Gateway:
- PaymentGateway: Payment processor protocol (Stripe and in-memory clients)

Reconciler:
- EscrowReconciler: init, sync, cancel, release, webhook handling
"""

from agrotrust.escrow.errors import (
    ConcurrentUpdateError,
    DuplicateEscrowError,
    EscrowError,
    ForbiddenError,
    FundsCapturedError,
    GatewayError,
    InvalidSignatureError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    UnauthorizedError,
    ValidationError,
)
from agrotrust.escrow.gateway import (
    InMemoryPaymentGateway,
    PaymentGateway,
    PaymentHold,
    PaymentIntentInfo,
    StripeGateway,
    WebhookEvent,
    verify_webhook_signature,
)
from agrotrust.escrow.models import (
    VALID_ESCROW_TRANSITIONS,
    Actor,
    EscrowEvent,
    EscrowEventType,
    EscrowRecord,
    EscrowStatus,
    RfqRef,
)
from agrotrust.escrow.reconciler import (
    EscrowConfig,
    EscrowReconciler,
    InitResult,
    WebhookOutcome,
)
from agrotrust.escrow.storage import (
    EscrowStorage,
    InMemoryEscrowStorage,
    SupabaseEscrowStorage,
)

__all__ = [
    # Models
    "EscrowRecord",
    "EscrowEvent",
    "EscrowEventType",
    "EscrowStatus",
    "Actor",
    "RfqRef",
    "VALID_ESCROW_TRANSITIONS",
    # Errors
    "EscrowError",
    "ValidationError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "InvalidStateError",
    "DuplicateEscrowError",
    "GatewayError",
    "InvalidSignatureError",
    "PersistenceError",
    "ConcurrentUpdateError",
    "FundsCapturedError",
    # Storage
    "EscrowStorage",
    "InMemoryEscrowStorage",
    "SupabaseEscrowStorage",
    # Gateway
    "PaymentGateway",
    "PaymentHold",
    "PaymentIntentInfo",
    "StripeGateway",
    "InMemoryPaymentGateway",
    "WebhookEvent",
    "verify_webhook_signature",
    # Reconciler
    "EscrowReconciler",
    "EscrowConfig",
    "InitResult",
    "WebhookOutcome",
]
