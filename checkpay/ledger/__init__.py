"""Ledger subsystem for Checkpay.

Modules:
- base.py: Ledger protocol and transaction parameters
- events.py: Event types and transaction receipts
- memory.py: In-memory reference ledger with fault injection
"""

from checkpay.ledger.base import ApplicationParams, EscrowParams, Ledger, ListingParams
from checkpay.ledger.events import LedgerEvent, LedgerEventType, TransactionReceipt
from checkpay.ledger.memory import InMemoryLedger

__all__ = [
    "Ledger",
    "ListingParams",
    "ApplicationParams",
    "EscrowParams",
    "LedgerEvent",
    "LedgerEventType",
    "TransactionReceipt",
    "InMemoryLedger",
]
