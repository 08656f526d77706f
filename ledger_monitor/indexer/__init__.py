"""
Ledger Ingestion Engine

Converts new-ledger notifications into deduplicated, address-scoped
transaction notifications.

Components:
- AddressRegistry: watched addresses and their monotonic cursors
- LedgerFloorTracker: safe lower bound from the node's retained range
- PendingTxIndex: transactions buffered per ledger until flushed
- DeliveryDispatcher: publishes activity through the durability gate
- IngestionLoop: per-ledger fan-out, join, flush, ledger-complete
"""

from .address_registry import AddressRegistry, WatchedAddress, MIN_LEDGER_VERSION
from .ledger_floor import LedgerFloorTracker, parse_complete_ledgers
from .pending_index import PendingTxIndex, PendingEntry
from .dispatcher import DeliveryDispatcher
from .ingestion import IngestionLoop, LedgerClient, LedgerProcessingResult

__all__ = [
    "AddressRegistry",
    "WatchedAddress",
    "MIN_LEDGER_VERSION",
    "LedgerFloorTracker",
    "parse_complete_ledgers",
    "PendingTxIndex",
    "PendingEntry",
    "DeliveryDispatcher",
    "IngestionLoop",
    "LedgerClient",
    "LedgerProcessingResult",
]
