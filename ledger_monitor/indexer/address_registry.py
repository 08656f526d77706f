"""
Address Registry

Watched addresses and their progress cursors.

The cursor is the lowest ledger version not yet queried for an address.
It starts at 1 (the minimum valid ledger version) and never decreases.
"""

import logging
from dataclasses import dataclass
from threading import RLock
from typing import Dict, List

from ..errors import UnknownAddress


MIN_LEDGER_VERSION = 1


@dataclass
class WatchedAddress:
    """Registry entry for one address."""
    address: str
    cursor: int = MIN_LEDGER_VERSION


class AddressRegistry:
    """
    Thread-safe map of address -> WatchedAddress.

    Concurrent per-address ingestion tasks advance cursors through
    advance_cursor(), which only ever moves a cursor forward.
    """

    def __init__(self):
        self._logger = logging.getLogger("AddressRegistry")
        self._lock = RLock()
        self._addresses: Dict[str, WatchedAddress] = {}

    def register(self, address: str) -> bool:
        """
        Start watching an address. Idempotent.

        Returns True if the address was not registered before.
        """
        with self._lock:
            if address in self._addresses:
                return False
            self._addresses[address] = WatchedAddress(address=address)
            self._logger.debug(f"Registered {address}")
            return True

    def cursor_for(self, address: str) -> int:
        with self._lock:
            entry = self._addresses.get(address)
            if entry is None:
                raise UnknownAddress(f"Address not registered: {address}", data=address)
            return entry.cursor

    def advance_cursor(self, address: str, new_cursor: int) -> bool:
        """
        Move the cursor forward to new_cursor.

        No-op unless new_cursor is greater than the current cursor.
        Returns True if the cursor moved.
        """
        with self._lock:
            entry = self._addresses.get(address)
            if entry is None:
                raise UnknownAddress(f"Address not registered: {address}", data=address)
            if new_cursor <= entry.cursor:
                return False
            entry.cursor = new_cursor
            return True

    def addresses(self) -> List[str]:
        """Registered addresses in registration order."""
        with self._lock:
            return list(self._addresses)

    def snapshot(self) -> Dict[str, int]:
        """Current cursors, for checkpointing."""
        with self._lock:
            return {a: e.cursor for a, e in self._addresses.items()}

    def restore(self, cursors: Dict[str, int]) -> int:
        """
        Apply checkpointed cursors to registered addresses.

        Unknown addresses are ignored; restored cursors obey the same
        monotonicity guard as advance_cursor(). Returns the number applied.
        """
        applied = 0
        with self._lock:
            for address, cursor in cursors.items():
                if address in self._addresses and self.advance_cursor(address, int(cursor)):
                    applied += 1
        return applied

    def __contains__(self, address: str) -> bool:
        with self._lock:
            return address in self._addresses

    def __len__(self) -> int:
        with self._lock:
            return len(self._addresses)
