"""
Mock Ledger Client

In-memory stand-in for RippledClient, for offline development and tests.
Implements the same interface: lifecycle, callbacks, server_info and
account range queries.

Use cases:
- Unit testing the ingestion loop without a node
- Injecting query failures and out-of-order completion
- Replaying a fixed set of transactions
"""

import asyncio
import inspect
import random
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import LedgerConnectionError, QueryError
from .types import LedgerInfo, ServerInfo, Transaction


@dataclass
class MockConfig:
    """Configuration for the mock ledger."""
    complete_ledgers: str = "1-1"  # Floor 1: all history queryable
    address_prefix: str = "rMock"
    tx_types: List[str] = field(default_factory=lambda: ["payment", "order", "trustline"])
    failure_probability: float = 0.0  # Chance a generated tx has a failed result


class MockLedgerClient:
    """
    Mock client holding transactions in memory.

    Usage:
        client = MockLedgerClient(seed=42)
        tx = client.make_transaction(ledger_version=120, address="rA")
        client.add_transaction(tx, affects=["rA", "rB"])
        await client.connect()
        await client.emit_ledger(150)
    """

    def __init__(self, config: Optional[MockConfig] = None, seed: int = None):
        self._config = config or MockConfig()
        self._random = random.Random(seed)

        self.complete_ledgers = self._config.complete_ledgers
        self.connected = False
        self.connect_error: Optional[Exception] = None
        self.server_info_error: Optional[Exception] = None

        # address -> transactions affecting it
        self._transactions: Dict[str, List[Transaction]] = {}
        # address -> queued exceptions for upcoming queries
        self._failures: Dict[str, List[Exception]] = {}
        # address -> seconds to sleep before answering
        self.delays: Dict[str, float] = {}

        # (address, min, max) for every query received
        self.queries: List[Tuple[str, int, int]] = []

        self._next_index: Dict[int, int] = {}

        self._on_connected: Optional[Callable] = None
        self._on_disconnected: Optional[Callable] = None
        self._on_error: Optional[Callable] = None
        self._on_ledger: Optional[Callable] = None

    # =========================================================================
    # Data Setup
    # =========================================================================

    def make_address(self, i: int) -> str:
        return f"{self._config.address_prefix}{i:028d}"

    def make_transaction(
        self,
        ledger_version: int,
        address: str,
        tx_type: Optional[str] = None,
        result: Optional[str] = None,
        tx_id: Optional[str] = None
    ) -> Transaction:
        """Generate a transaction with a random 64-hex-digit id."""
        index = self._next_index.get(ledger_version, 0)
        self._next_index[ledger_version] = index + 1

        if result is None:
            failed = self._random.random() < self._config.failure_probability
            result = "tecUNFUNDED_PAYMENT" if failed else "tesSUCCESS"

        return Transaction(
            id=tx_id or "%064X" % self._random.getrandbits(256),
            ledger_version=ledger_version,
            index_in_ledger=index,
            result=result,
            type=tx_type or self._random.choice(self._config.tx_types),
            address=address,
            timestamp="2017-06-20T17:04:51.000Z",
            sequence=self._random.randint(1, 10_000),
            fee="0.000012",
        )

    def add_transaction(self, tx: Transaction, affects: Optional[Iterable[str]] = None):
        """Make tx visible to queries for its source and every address in affects."""
        addresses = {tx.address, *(affects or ())}
        for address in addresses:
            self._transactions.setdefault(address, []).append(tx)

    def fail_next(self, address: str, count: int = 1, error: Optional[Exception] = None):
        """Make the next `count` queries for address raise."""
        for _ in range(count):
            self._failures.setdefault(address, []).append(
                error or ConnectionResetError(f"simulated network error for {address}")
            )

    # =========================================================================
    # Client Interface
    # =========================================================================

    async def connect(self):
        if self.connect_error is not None:
            raise LedgerConnectionError(f"Failed to connect: {self.connect_error}")
        self.connected = True
        await self._fire(self._on_connected)

    async def disconnect(self):
        if self.connected:
            self.connected = False
            await self._fire(self._on_disconnected, 1000)

    async def get_server_info(self) -> ServerInfo:
        if self.server_info_error is not None:
            raise self.server_info_error
        return ServerInfo(complete_ledgers=self.complete_ledgers, server_state="full")

    async def get_transactions(
        self,
        address: str,
        min_ledger_version: int,
        max_ledger_version: int,
        earliest_first: bool = True,
        exclude_failures: bool = False
    ) -> List[Transaction]:
        self.queries.append((address, min_ledger_version, max_ledger_version))

        delay = self.delays.get(address, 0)
        if delay:
            await asyncio.sleep(delay)

        failures = self._failures.get(address)
        if failures:
            error = failures.pop(0)
            if isinstance(error, QueryError):
                raise error
            raise QueryError(
                f"getTransactions failed for {address}: {error}",
                address=address,
                min_ledger_version=min_ledger_version,
                max_ledger_version=max_ledger_version,
                data={"exception": repr(error)}
            )

        txs = [
            tx for tx in self._transactions.get(address, [])
            if min_ledger_version <= tx.ledger_version <= max_ledger_version
            and (tx.succeeded or not exclude_failures)
        ]
        txs.sort(
            key=lambda tx: (tx.ledger_version, tx.index_in_ledger),
            reverse=not earliest_first
        )
        return txs

    # =========================================================================
    # Event Simulation
    # =========================================================================

    async def emit_ledger(self, ledger_version: int, transaction_count: int = 0):
        await self._fire(self._on_ledger, LedgerInfo(
            ledger_version=ledger_version,
            transaction_count=transaction_count,
            validated_ledgers=self.complete_ledgers,
        ))

    async def emit_error(self, code: str, message: str, data=None):
        await self._fire(self._on_error, code, message, data)

    async def drop_connection(self, code: int = 1006):
        """Simulate the node closing the connection."""
        self.connected = False
        await self._fire(self._on_disconnected, code)

    async def _fire(self, callback: Optional[Callable], *args):
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

    def set_connected_callback(self, callback: Callable):
        self._on_connected = callback

    def set_disconnected_callback(self, callback: Callable):
        self._on_disconnected = callback

    def set_error_callback(self, callback: Callable):
        self._on_error = callback

    def set_ledger_callback(self, callback: Callable):
        self._on_ledger = callback
