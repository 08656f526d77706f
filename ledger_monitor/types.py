"""
Ledger Monitor Data Types

Pure data structures for ledger notifications, server metadata and
transactions observed for watched addresses.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class LedgerInfo:
    """
    A closed ledger announced by the node's ledger stream.

    ledger_version is the ledger index (sequence) assigned by the network.
    """
    ledger_version: int
    ledger_hash: Optional[str] = None
    ledger_timestamp: Optional[str] = None
    transaction_count: int = 0
    validated_ledgers: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ledgerVersion': self.ledger_version,
            'ledgerHash': self.ledger_hash,
            'ledgerTimestamp': self.ledger_timestamp,
            'transactionCount': self.transaction_count,
            'validatedLedgers': self.validated_ledgers,
        }


@dataclass(frozen=True)
class ServerInfo:
    """
    Subset of rippled server_info used by the monitor.

    complete_ledgers is the retained range string, e.g. "32570-62000000".
    """
    complete_ledgers: str
    build_version: Optional[str] = None
    server_state: Optional[str] = None
    validated_ledger_version: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class Transaction:
    """
    Transaction returned by an address range query.

    Immutable once received. `address` is the sending account; the watched
    address it was found for is carried separately with each notification.
    """
    id: str
    ledger_version: int
    index_in_ledger: int
    result: str
    type: str
    address: str
    timestamp: Optional[str] = None
    sequence: Optional[int] = None
    fee: Optional[str] = None
    specification: Dict[str, Any] = field(default_factory=dict, compare=False)
    outcome: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.result == "tesSUCCESS"

    def format_fields(self) -> Dict[str, Any]:
        """Fields available to filename format strings."""
        return {
            'id': self.id,
            'ledger_version': self.ledger_version,
            'index_in_ledger': self.index_in_ledger,
            'result': self.result,
            'type': self.type,
            'address': self.address,
            'timestamp': self.timestamp or "",
            'sequence': self.sequence if self.sequence is not None else "",
        }

    def to_dict(self) -> Dict[str, Any]:
        """Record form, matching the layout ripple-lib uses for getTransactions."""
        outcome = dict(self.outcome)
        outcome.update({
            'result': self.result,
            'timestamp': self.timestamp,
            'fee': self.fee,
            'ledgerVersion': self.ledger_version,
            'indexInLedger': self.index_in_ledger,
        })
        return {
            'type': self.type,
            'address': self.address,
            'sequence': self.sequence,
            'id': self.id,
            'specification': dict(self.specification),
            'outcome': outcome,
        }
