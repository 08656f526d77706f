"""
Delivery Dispatcher

Turns flushed pending entries into address-scoped notifications, consulting
the durability gate so that nothing recorded in an earlier run is delivered
again.

Per entry:
1. Skip if the store already has the transaction id
2. Publish ADDRESS_ACTIVITY once per observing address
3. Record the transaction id once (not per address)

Store failures are contained per entry and reported on the ERROR channel:
- Check failed: the entry goes back to the caller's requeue (pending index)
  and is retried on the next ledger
- Record failed: the notification stands; the transaction stays unrecorded,
  recording is retried on later deliveries, and lowest_unrecorded_ledger()
  tells the checkpoint not to move cursors past it
"""

import logging
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple

from ..errors import PersistenceError
from ..events import EventBus, EventKind
from ..persistence.delivery_store import DeliveryStore
from ..types import Transaction
from .pending_index import PendingEntry


class DeliveryDispatcher:
    """Publishes activity, ledger-complete and error events."""

    def __init__(self, bus: EventBus, store: DeliveryStore):
        self._bus = bus
        self._store = store
        self._logger = logging.getLogger("DeliveryDispatcher")

        # (address, tx id) pairs notified in this process
        self._notified: Set[Tuple[str, str]] = set()

        # tx id -> entry notified but not yet recorded by the store
        self._unrecorded: Dict[str, PendingEntry] = {}

        self._stats = {
            "delivered": 0,
            "suppressed": 0,
            "notifications": 0,
            "persistence_failures": 0,
            "requeued": 0,
        }

    async def deliver(
        self,
        entries: Iterable[PendingEntry],
        requeue: Optional[Callable[[PendingEntry], None]] = None
    ) -> int:
        """
        Deliver flushed entries.

        Args:
            entries: Entries flushed from the pending index
            requeue: Receives entries whose delivered-check failed

        Returns:
            Number of transactions delivered (not suppressed as duplicates)
        """
        await self._retry_unrecorded()

        delivered = 0
        for entry in entries:
            tx = entry.transaction

            try:
                seen = self._store.already_delivered(tx.id)
            except Exception as e:
                await self._check_failed(entry, e, requeue)
                continue

            if seen:
                self._logger.debug(f"tx {tx.id} already delivered")
                self._stats["suppressed"] += 1
                continue

            notified = 0
            for address in sorted(entry.addresses):
                if await self.notify_address_activity(address, tx, address):
                    notified += 1

            if notified == 0:
                self._stats["suppressed"] += 1
                continue

            if await self._record(entry):
                self._unrecorded.pop(tx.id, None)
            else:
                self._unrecorded.setdefault(tx.id, entry)

            delivered += 1
            self._stats["delivered"] += 1

        return delivered

    async def _record(self, entry: PendingEntry, report: bool = True) -> bool:
        """Record entry's transaction. Returns False if the store failed."""
        tx = entry.transaction
        try:
            self._store.record_delivered(tx)
        except Exception as e:
            self._stats["persistence_failures"] += 1
            error = self._as_persistence_error(e, f"Failed to record tx {tx.id}")
            if report:
                self._logger.error(f"{error.message}; will retry on a later ledger")
                await self.report_error(error.code, error.message, {
                    "id": tx.id,
                    "ledgerVersion": tx.ledger_version,
                    "detail": error.data,
                })
            else:
                self._logger.debug(f"Retry failed: {error.message}")
            return False

        # The store now answers for this id
        for address in entry.addresses:
            self._notified.discard((address, tx.id))
        return True

    async def _retry_unrecorded(self):
        for tx_id, entry in list(self._unrecorded.items()):
            if await self._record(entry, report=False):
                self._logger.info(f"Recorded tx {tx_id} on retry")
                del self._unrecorded[tx_id]

    async def _check_failed(
        self,
        entry: PendingEntry,
        exc: Exception,
        requeue: Optional[Callable[[PendingEntry], None]]
    ):
        tx = entry.transaction
        error = self._as_persistence_error(exc, f"Failed to check tx {tx.id}")
        if requeue is not None:
            requeue(entry)
            self._stats["requeued"] += 1
            self._logger.warning(f"{error.message}; retrying on the next ledger")
        else:
            self._logger.error(f"{error.message}; entry dropped")
        await self.report_error(error.code, error.message, {
            "id": tx.id,
            "ledgerVersion": tx.ledger_version,
            "detail": error.data,
        })

    def _as_persistence_error(self, exc: Exception, context: str) -> PersistenceError:
        if isinstance(exc, PersistenceError):
            return exc
        self._logger.debug(f"{context}: unexpected store error", exc_info=exc)
        return PersistenceError(f"{context}: {exc!r}", data={"exception": repr(exc)})

    async def notify_address_activity(
        self,
        address: str,
        tx: Transaction,
        affected_address: str
    ) -> bool:
        """
        Publish ADDRESS_ACTIVITY for address.

        Returns False if this (address, tx id) pair was already notified.
        """
        key = (address, tx.id)
        if key in self._notified:
            return False
        self._notified.add(key)

        await self._bus.publish(
            EventKind.ADDRESS_ACTIVITY, tx, affected_address, address=address
        )
        self._stats["notifications"] += 1
        return True

    async def notify_ledger_complete(self, ledger_version: int):
        await self._bus.publish(EventKind.LEDGER_COMPLETE, ledger_version)

    async def report_error(self, code: str, message: str, data: Optional[Any] = None):
        await self._bus.publish(EventKind.ERROR, code, message, data)

    def lowest_unrecorded_ledger(self) -> Optional[int]:
        """Lowest ledger version holding a notified but unrecorded transaction."""
        if not self._unrecorded:
            return None
        return min(entry.ledger_version for entry in self._unrecorded.values())

    def get_stats(self):
        return {**self._stats, "unrecorded": len(self._unrecorded)}
