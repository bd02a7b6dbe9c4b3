"""
Escrow storage layer.

Provides persistence for escrow records, their audit events, and the RFQ
lookups escrow init needs. The Supabase backend is used in production; the
in-memory backend serves tests and local development.
"""

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from agrotrust.escrow.errors import ConcurrentUpdateError, NotFoundError, PersistenceError
from agrotrust.escrow.models import (
    TERMINAL_STATUSES,
    EscrowEvent,
    EscrowRecord,
    EscrowStatus,
    RfqRef,
    utc_now,
)

logger = logging.getLogger(__name__)

ESCROWS_TABLE = "escrows"
ESCROW_EVENTS_TABLE = "escrow_events"
RFQS_TABLE = "rfqs"

# Fields an update may touch. amount, parties and ids are fixed at creation.
UPDATABLE_FIELDS = frozenset({"status", "payment_intent_id", "client_reference", "released_at"})


def _check_fields(fields: Dict[str, Any]) -> None:
    illegal = set(fields) - UPDATABLE_FIELDS
    if illegal:
        raise ValueError(f"Fields not updatable: {sorted(illegal)}")


def _to_row_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class EscrowStorage(Protocol):
    """Protocol for escrow persistence backends."""

    def create(self, record: EscrowRecord) -> EscrowRecord:
        """Insert a new escrow record."""
        ...

    def get(self, escrow_id: str) -> Optional[EscrowRecord]:
        """Get an escrow by ID."""
        ...

    def update(
        self,
        escrow_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[EscrowStatus] = None,
    ) -> EscrowRecord:
        """Update fields of an escrow.

        When ``expected_status`` is given the write only applies if the
        stored status still equals it; otherwise ConcurrentUpdateError.
        """
        ...

    def append_event(self, event: EscrowEvent) -> None:
        """Append an audit event."""
        ...

    def list_events(self, escrow_id: str) -> List[EscrowEvent]:
        """Get all events for an escrow, oldest first."""
        ...

    def find_active_by_rfq(self, rfq_id: str) -> Optional[EscrowRecord]:
        """Get a non-terminal escrow for an RFQ, if any."""
        ...

    def get_rfq(self, rfq_id: str) -> Optional[RfqRef]:
        """Get an RFQ by ID."""
        ...


class InMemoryEscrowStorage:
    """In-memory escrow storage for testing and local development."""

    def __init__(self):
        self._escrows: Dict[str, EscrowRecord] = {}
        self._events: Dict[str, List[EscrowEvent]] = {}
        self._rfqs: Dict[str, RfqRef] = {}
        self._lock = threading.Lock()

    def add_rfq(self, rfq: RfqRef) -> None:
        """Register an RFQ so escrow init can find it."""
        self._rfqs[rfq.id] = rfq

    def create(self, record: EscrowRecord) -> EscrowRecord:
        with self._lock:
            if record.id in self._escrows:
                raise PersistenceError(f"Escrow {record.id} already exists")
            self._escrows[record.id] = _copy(record)
            self._events.setdefault(record.id, [])
        return _copy(record)

    def get(self, escrow_id: str) -> Optional[EscrowRecord]:
        record = self._escrows.get(escrow_id)
        return _copy(record) if record else None

    def update(
        self,
        escrow_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[EscrowStatus] = None,
    ) -> EscrowRecord:
        _check_fields(fields)
        with self._lock:
            record = self._escrows.get(escrow_id)
            if record is None:
                raise NotFoundError(f"Escrow {escrow_id} not found")
            if expected_status is not None and record.status != EscrowStatus(expected_status):
                raise ConcurrentUpdateError(escrow_id, EscrowStatus(expected_status).value)
            for name, value in fields.items():
                if name == "status":
                    value = EscrowStatus(value)
                setattr(record, name, value)
            record.updated_at = utc_now()
            return _copy(record)

    def append_event(self, event: EscrowEvent) -> None:
        with self._lock:
            self._events.setdefault(event.escrow_id, []).append(event)

    def list_events(self, escrow_id: str) -> List[EscrowEvent]:
        return list(self._events.get(escrow_id, []))

    def find_active_by_rfq(self, rfq_id: str) -> Optional[EscrowRecord]:
        for record in self._escrows.values():
            if record.rfq_id == rfq_id and record.status not in TERMINAL_STATUSES:
                return _copy(record)
        return None

    def get_rfq(self, rfq_id: str) -> Optional[RfqRef]:
        return self._rfqs.get(rfq_id)


def _copy(record: EscrowRecord) -> EscrowRecord:
    return EscrowRecord.from_dict(record.to_dict())


class SupabaseEscrowStorage:
    """Escrow storage backed by Supabase (PostgREST).

    Every failure from the client is surfaced as PersistenceError so callers
    can tell a store problem from a gateway problem.
    """

    def __init__(self, client):
        self.client = client

    def _execute(self, action: str, query):
        try:
            return query.execute()
        except Exception as e:
            logger.error(f"Supabase {action} failed: {e}")
            raise PersistenceError(f"Database {action} failed: {e}") from e

    def create(self, record: EscrowRecord) -> EscrowRecord:
        result = self._execute(
            "insert escrow", self.client.table(ESCROWS_TABLE).insert(record.to_dict())
        )
        if not result.data:
            raise PersistenceError("Failed to create escrow record")
        return EscrowRecord.from_dict(result.data[0])

    def get(self, escrow_id: str) -> Optional[EscrowRecord]:
        result = self._execute(
            "select escrow",
            self.client.table(ESCROWS_TABLE).select("*").eq("id", escrow_id).limit(1),
        )
        return EscrowRecord.from_dict(result.data[0]) if result.data else None

    def update(
        self,
        escrow_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[EscrowStatus] = None,
    ) -> EscrowRecord:
        _check_fields(fields)
        row = {name: _to_row_value(value) for name, value in fields.items()}
        row["updated_at"] = utc_now().isoformat()

        query = self.client.table(ESCROWS_TABLE).update(row).eq("id", escrow_id)
        if expected_status is not None:
            query = query.eq("status", EscrowStatus(expected_status).value)
        result = self._execute("update escrow", query)

        if result.data:
            return EscrowRecord.from_dict(result.data[0])
        if self.get(escrow_id) is None:
            raise NotFoundError(f"Escrow {escrow_id} not found")
        raise ConcurrentUpdateError(
            escrow_id, EscrowStatus(expected_status).value if expected_status else None
        )

    def append_event(self, event: EscrowEvent) -> None:
        self._execute(
            "insert escrow event",
            self.client.table(ESCROW_EVENTS_TABLE).insert(event.to_dict()),
        )

    def list_events(self, escrow_id: str) -> List[EscrowEvent]:
        result = self._execute(
            "select escrow events",
            self.client.table(ESCROW_EVENTS_TABLE)
            .select("*")
            .eq("escrow_id", escrow_id)
            .order("created_at"),
        )
        return [EscrowEvent.from_dict(row) for row in result.data or []]

    def find_active_by_rfq(self, rfq_id: str) -> Optional[EscrowRecord]:
        active = [
            s.value for s in EscrowStatus if s not in TERMINAL_STATUSES
        ]
        result = self._execute(
            "select active escrow",
            self.client.table(ESCROWS_TABLE)
            .select("*")
            .eq("rfq_id", rfq_id)
            .in_("status", active)
            .limit(1),
        )
        return EscrowRecord.from_dict(result.data[0]) if result.data else None

    def get_rfq(self, rfq_id: str) -> Optional[RfqRef]:
        result = self._execute(
            "select rfq",
            self.client.table(RFQS_TABLE)
            .select("id, buyer_id, cooperative_id, lot_id, product_name, quantity_kg")
            .eq("id", rfq_id)
            .limit(1),
        )
        return RfqRef.from_dict(result.data[0]) if result.data else None
