"""
Pending Transaction Index

Buffers transactions observed for a ledger version until that ledger has
been fully processed.

Layout: ledger_version -> {transaction id -> PendingEntry}

A transaction seen by several watched addresses (or by overlapping range
queries) is stored once; each observing address is recorded on the entry.
"""

import logging
from dataclasses import dataclass, field
from threading import RLock
from typing import Dict, List, Set

from ..types import Transaction


@dataclass
class PendingEntry:
    """A buffered transaction and the watched addresses that observed it."""
    transaction: Transaction
    addresses: Set[str] = field(default_factory=set)

    @property
    def ledger_version(self) -> int:
        return self.transaction.ledger_version

    @property
    def tx_id(self) -> str:
        return self.transaction.id


class PendingTxIndex:
    """
    Thread-safe two-level index of undelivered transactions.

    insert() and flush_up_to() take the same lock, so an insert is either
    flushed or left for the next flush, never lost.
    """

    def __init__(self):
        self._logger = logging.getLogger("PendingTxIndex")
        self._lock = RLock()
        self._by_ledger: Dict[int, Dict[str, PendingEntry]] = {}

    def insert(self, ledger_version: int, tx: Transaction, address: str) -> bool:
        """
        Buffer tx under (ledger_version, tx.id) as observed by address.

        Idempotent: an id already present for this ledger version keeps its
        first transaction; only the observing address is added.

        Returns True if the transaction was not buffered before.
        """
        with self._lock:
            bucket = self._by_ledger.setdefault(ledger_version, {})
            entry = bucket.get(tx.id)
            if entry is not None:
                entry.addresses.add(address)
                return False

            bucket[tx.id] = PendingEntry(transaction=tx, addresses={address})
            self._logger.debug(f"Seeing tx {tx.id} for the first time (ledger {ledger_version})")
            return True

    def flush_up_to(self, ledger_version: int) -> List[PendingEntry]:
        """
        Remove and return every entry with version <= ledger_version.

        Entries come back lowest ledger version first, then by position in
        the ledger.
        """
        with self._lock:
            versions = sorted(v for v in self._by_ledger if v <= ledger_version)
            flushed = []
            for version in versions:
                bucket = self._by_ledger.pop(version)
                flushed.extend(sorted(
                    bucket.values(),
                    key=lambda e: (e.transaction.index_in_ledger, e.tx_id)
                ))

        if flushed:
            self._logger.debug(
                f"Flushed {len(flushed)} txs from {len(versions)} ledgers up to {ledger_version}"
            )
        return flushed

    def requeue(self, entry: PendingEntry):
        """Put a flushed entry back so the next flush returns it again."""
        with self._lock:
            bucket = self._by_ledger.setdefault(entry.ledger_version, {})
            existing = bucket.get(entry.tx_id)
            if existing is None:
                bucket[entry.tx_id] = entry
            else:
                existing.addresses.update(entry.addresses)

    def contains(self, ledger_version: int, tx_id: str) -> bool:
        with self._lock:
            return tx_id in self._by_ledger.get(ledger_version, {})

    def get(self, ledger_version: int, tx_id: str) -> PendingEntry:
        with self._lock:
            return self._by_ledger[ledger_version][tx_id]

    def versions(self) -> List[int]:
        """Ledger versions with buffered transactions, ascending."""
        with self._lock:
            return sorted(self._by_ledger)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(bucket) for bucket in self._by_ledger.values())
