"""Ledger events and transaction receipts.

Every mutating ledger call returns a ``TransactionReceipt`` once the
transaction is confirmed. Receipts carry the events the transaction emitted;
the approval saga reads the new escrow's id from the ``ESCROW_CREATED``
event rather than trusting a return value.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from checkpay.errors import CollaboratorFailure

RECEIPT_SUCCESS = 1
RECEIPT_REVERTED = 0


class LedgerEventType(Enum):
    """Events emitted by the listing registry, escrow factory and escrow units."""

    LISTING_CREATED = "ListingCreated"
    LISTING_DEACTIVATED = "ListingDeactivated"
    APPLICATION_SUBMITTED = "ApplicationSubmitted"
    SPEND_AUTHORIZED = "SpendAuthorized"
    ESCROW_CREATED = "EscrowCreated"
    FUNDS_DEPOSITED = "FundsDeposited"
    APPLICATION_APPROVED = "ApplicationApproved"
    ESCROW_BOUND = "EscrowBound"
    CHECKPOINT_SUBMITTED = "CheckpointSubmitted"
    CHECKPOINT_APPROVED = "CheckpointApproved"
    CHECKPOINT_REJECTED = "CheckpointRejected"
    JOB_CANCELLED = "JobCancelled"


@dataclass(frozen=True)
class LedgerEvent:
    """A single event log entry."""

    event_type: LedgerEventType
    args: Dict[str, Any] = field(default_factory=dict)
    log_index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event_type.value,
            "args": {k: str(v) if isinstance(v, int) and not isinstance(v, bool) else v for k, v in self.args.items()},
            "log_index": self.log_index,
        }


@dataclass
class TransactionReceipt:
    """Confirmed transaction."""

    tx_hash: str
    block_number: int
    status: int = RECEIPT_SUCCESS
    events: List[LedgerEvent] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == RECEIPT_SUCCESS

    def find_event(self, event_type: LedgerEventType) -> Optional[LedgerEvent]:
        for event in self.events:
            if event.event_type == event_type:
                return event
        return None

    def require_event(self, event_type: LedgerEventType) -> LedgerEvent:
        """Return the first event of ``event_type`` or fail the call."""
        event = self.find_event(event_type)
        if event is None:
            raise CollaboratorFailure(
                f"Transaction {self.tx_hash} did not emit {event_type.value}"
            )
        return event

    def require_success(self, **context: Any) -> "TransactionReceipt":
        """Return the receipt, or fail the call if the transaction reverted.

        ``context`` is passed through to the raised ``CollaboratorFailure``.
        """
        if not self.succeeded:
            raise CollaboratorFailure(
                f"Transaction {self.tx_hash} reverted (status {self.status})", **context
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "status": self.status,
            "events": [e.to_dict() for e in self.events],
        }
