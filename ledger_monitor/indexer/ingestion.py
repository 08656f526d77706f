"""
Ingestion Loop

Reacts to each new ledger by catching up every watched address:

    lower = max(cursor, floor)
    if lower <= ledger_version:
        txs = get_transactions(address, lower, ledger_version)
        buffer txs; advance cursor to ledger_version

Per-address queries for one ledger run concurrently and are joined before
the pending index is flushed and LEDGER_COMPLETE is published, so every
transaction fetched for a ledger is delivered before its completion signal.

A failed query leaves the cursor where it was; the next ledger re-queries
the same lower bound with a larger upper bound. Entries whose delivered-check
fails go back into the pending index and are flushed with the next ledger.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from ..errors import QueryError
from ..types import LedgerInfo, ServerInfo, Transaction
from .address_registry import AddressRegistry
from .dispatcher import DeliveryDispatcher
from .ledger_floor import LedgerFloorTracker
from .pending_index import PendingTxIndex


class LedgerClient(Protocol):
    """Ledger node operations consumed by the monitor."""

    async def connect(self) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    async def get_server_info(self) -> ServerInfo:
        ...

    async def get_transactions(
        self,
        address: str,
        min_ledger_version: int,
        max_ledger_version: int,
        earliest_first: bool = True,
        exclude_failures: bool = False
    ) -> List[Transaction]:
        ...


@dataclass
class LedgerProcessingResult:
    """Outcome of processing one ledger notification."""
    ledger_version: int
    queried: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    transactions_seen: int = 0
    transactions_delivered: int = 0
    duration_ms: float = 0.0


class IngestionLoop:
    """
    Per-ledger fan-out over watched addresses.

    Usage:
        loop = IngestionLoop(client, registry, floor, pending, dispatcher)
        result = await loop.process_ledger(ledger_info)

    The caller must not run process_ledger() for two ledgers at once;
    LedgerMonitor serializes notifications through a queue.
    """

    def __init__(
        self,
        client: LedgerClient,
        registry: AddressRegistry,
        floor: LedgerFloorTracker,
        pending: PendingTxIndex,
        dispatcher: DeliveryDispatcher
    ):
        self._client = client
        self._registry = registry
        self._floor = floor
        self._pending = pending
        self._dispatcher = dispatcher
        self._logger = logging.getLogger("IngestionLoop")

        self._last_completed: Optional[int] = None
        self._stats = {
            "ledgers_processed": 0,
            "queries": 0,
            "query_failures": 0,
            "transactions_seen": 0,
        }

    async def process_ledger(self, ledger: LedgerInfo) -> LedgerProcessingResult:
        """
        Catch up all addresses to ledger.ledger_version, then flush and
        publish LEDGER_COMPLETE.
        """
        start = time.time()
        version = ledger.ledger_version
        result = LedgerProcessingResult(ledger_version=version)
        addresses = self._registry.addresses()

        # Join barrier: every per-address task settles before the flush
        outcomes = await asyncio.gather(
            *(self._ingest_address(address, version) for address in addresses),
            return_exceptions=True
        )

        for address, outcome in zip(addresses, outcomes):
            if isinstance(outcome, QueryError):
                result.failed[address] = outcome.message
                await self._report_query_error(outcome)
            elif isinstance(outcome, BaseException):
                # Not a query failure: a bug or an unexpected client error
                self._logger.error(
                    f"Ingestion for {address} crashed: {outcome!r}",
                    exc_info=outcome
                )
                result.failed[address] = repr(outcome)
                await self._dispatcher.report_error(
                    QueryError.code, f"Ingestion for {address} crashed: {outcome}", address
                )
            elif outcome is None:
                result.skipped.append(address)
            else:
                result.queried.append(address)
                result.transactions_seen += outcome

        entries = self._pending.flush_up_to(version)
        result.transactions_delivered = await self._dispatcher.deliver(
            entries, requeue=self._pending.requeue
        )
        await self._dispatcher.notify_ledger_complete(version)

        self._last_completed = version
        self._stats["ledgers_processed"] += 1
        result.duration_ms = (time.time() - start) * 1000

        self._logger.info(
            f"Ledger {version}: {len(result.queried)} queried, "
            f"{len(result.skipped)} skipped, {len(result.failed)} failed, "
            f"{result.transactions_seen} txs seen, "
            f"{result.transactions_delivered} delivered "
            f"({result.duration_ms:.0f}ms)"
        )
        return result

    async def _ingest_address(self, address: str, ledger_version: int) -> Optional[int]:
        """
        Query one address up to ledger_version.

        Returns:
            Number of transactions fetched, or None if nothing to query

        Raises:
            QueryError: the range query failed; cursor not advanced
        """
        lower = max(self._registry.cursor_for(address), self._floor.current_floor())
        if lower > ledger_version:
            return None

        self._stats["queries"] += 1
        try:
            txs = await self._client.get_transactions(
                address,
                min_ledger_version=lower,
                max_ledger_version=ledger_version,
                earliest_first=True,
                exclude_failures=False
            )
        except QueryError as e:
            self._stats["query_failures"] += 1
            if e.address is None:
                e.address = address
                e.min_ledger_version = lower
                e.max_ledger_version = ledger_version
            raise
        except Exception as e:
            self._stats["query_failures"] += 1
            raise QueryError(
                f"getTransactions failed for {address} [{lower}, {ledger_version}]: {e}",
                address=address,
                min_ledger_version=lower,
                max_ledger_version=ledger_version,
                data={"exception": repr(e)}
            )

        self._logger.debug(
            f"Found {len(txs)} txs for {address} in ledgers {lower}-{ledger_version}"
        )
        for tx in txs:
            self._pending.insert(tx.ledger_version, tx, address)

        self._registry.advance_cursor(address, ledger_version)
        self._stats["transactions_seen"] += len(txs)
        return len(txs)

    async def _report_query_error(self, error: QueryError):
        self._logger.warning(f"Query failed, will retry next ledger: {error.message}")
        await self._dispatcher.report_error(
            error.code,
            error.message,
            {
                "address": error.address,
                "minLedgerVersion": error.min_ledger_version,
                "maxLedgerVersion": error.max_ledger_version,
                "detail": error.data,
            }
        )

    @property
    def last_completed_ledger(self) -> Optional[int]:
        return self._last_completed

    def get_stats(self) -> Dict:
        return {
            **self._stats,
            "last_completed_ledger": self._last_completed,
            "floor": self._floor.current_floor(),
            "pending": len(self._pending),
        }
