"""Escrow error taxonomy.

Each error carries the HTTP status the service answers with and a stable
machine-readable code, so the HTTP layer never has to interpret messages.
"""

from typing import Any, Dict, Optional


class EscrowError(Exception):
    """Base exception for escrow operations."""

    code = "ESCROW_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(EscrowError):
    """Malformed or missing input."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, {"field": field} if field else None)
        self.field = field


class UnauthorizedError(EscrowError):
    """Missing or invalid credential."""

    code = "UNAUTHORIZED"
    status_code = 401


class ForbiddenError(EscrowError):
    """Credential lacks the required role."""

    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(EscrowError):
    """Unknown escrow or RFQ, or one the caller may not see."""

    code = "NOT_FOUND"
    status_code = 404


class InvalidStateError(EscrowError):
    """Operation is not legal for the current status."""

    code = "INVALID_STATE"
    status_code = 400

    def __init__(
        self,
        message: str,
        local_status: Optional[str] = None,
        gateway_status: Optional[str] = None,
    ):
        super().__init__(
            message, {"local_status": local_status, "gateway_status": gateway_status}
        )
        self.local_status = local_status
        self.gateway_status = gateway_status


class DuplicateEscrowError(InvalidStateError):
    """An active escrow already exists for the RFQ."""

    code = "DUPLICATE_ESCROW"
    status_code = 409


class GatewayError(EscrowError):
    """The payment processor call failed or timed out.

    On timeout nothing is known about the gateway-side effect; the next
    interaction must sync to find out.
    """

    code = "GATEWAY_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        timed_out: bool = False,
        gateway_code: Optional[str] = None,
    ):
        super().__init__(message, {"timed_out": timed_out, "gateway_code": gateway_code})
        self.timed_out = timed_out
        self.gateway_code = gateway_code


class InvalidSignatureError(EscrowError):
    """Webhook signature did not verify."""

    code = "INVALID_SIGNATURE"
    status_code = 400


class PersistenceError(EscrowError):
    """A store read or write failed."""

    code = "PERSISTENCE_ERROR"
    status_code = 500


class ConcurrentUpdateError(PersistenceError):
    """A conditional update found a different status than expected."""

    code = "CONCURRENT_UPDATE"
    status_code = 409

    def __init__(self, escrow_id: str, expected_status: Optional[str]):
        super().__init__(
            f"Escrow {escrow_id} changed concurrently (expected status {expected_status})",
            {"escrow_id": escrow_id, "expected_status": expected_status},
        )
        self.escrow_id = escrow_id
        self.expected_status = expected_status


class FundsCapturedError(PersistenceError):
    """Capture succeeded at the gateway but the local record was not updated."""

    code = "FUNDS_CAPTURED_BOOKKEEPING_FAILED"
    status_code = 500

    def __init__(self, escrow_id: str, payment_intent_id: str, cause: str):
        super().__init__(
            f"Funds for escrow {escrow_id} were captured (payment intent "
            f"{payment_intent_id}) but local bookkeeping failed: {cause}. "
            "Manual reconciliation required.",
            {"escrow_id": escrow_id, "payment_intent_id": payment_intent_id, "cause": cause},
        )
        self.escrow_id = escrow_id
        self.payment_intent_id = payment_intent_id
