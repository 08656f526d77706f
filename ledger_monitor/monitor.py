"""
Ledger Monitor

Orchestrates the ingestion engine around a ledger client:
- Client connected: refresh the ledger floor from server_info
- Client ledger: queue the ledger for the single ingestion worker
- Worker: process ledgers one at a time, checkpoint cursors (never past a
  transaction the store has not recorded yet)

Subscribers attach through subscribe(); see events.EventKind for the event
kinds and callback signatures.

Usage:
    monitor = LedgerMonitor(RippledClient(config), SqliteDeliveryStore())
    monitor.add_address("rEXAMPLE...")
    monitor.subscribe(EventKind.ADDRESS_ACTIVITY, on_tx, address="rEXAMPLE...")
    await monitor.start()
    # ... runs until ...
    await monitor.stop()
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from .errors import FloorParseError, LedgerMonitorError
from .events import EventBus, EventKind
from .indexer import (
    AddressRegistry,
    DeliveryDispatcher,
    IngestionLoop,
    LedgerClient,
    LedgerFloorTracker,
    PendingTxIndex,
)
from .persistence import DeliveryStore
from .types import LedgerInfo, ServerInfo


class LedgerMonitor:
    """Address-scoped, deduplicated transaction notifications for a ledger."""

    def __init__(
        self,
        client: LedgerClient,
        store: DeliveryStore,
        checkpoint_path: Optional[str] = None,
        bus: Optional[EventBus] = None
    ):
        self._client = client
        self._store = store
        self._checkpoint_path = checkpoint_path
        self._logger = logging.getLogger("LedgerMonitor")

        # Components
        self.bus = bus or EventBus()
        self.registry = AddressRegistry()
        self.floor = LedgerFloorTracker()
        self.pending = PendingTxIndex()
        self.dispatcher = DeliveryDispatcher(self.bus, store)
        self.ingestion = IngestionLoop(
            client, self.registry, self.floor, self.pending, self.dispatcher
        )

        # State
        self._running = False
        self._queue: "asyncio.Queue[Optional[LedgerInfo]]" = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self._server_info: Optional[ServerInfo] = None
        self._checkpoint: Dict = {}

    # =========================================================================
    # Public API
    # =========================================================================

    def add_address(self, address: str) -> bool:
        """Watch an address. Returns False if it was already watched."""
        return self.registry.register(address)

    def subscribe(self, kind: EventKind, callback: Callable, address: Optional[str] = None):
        self.bus.subscribe(kind, callback, address=address)

    async def start(self):
        """
        Wire client events, start the ingestion worker and connect.

        Raises:
            LedgerConnectionError: initial connection failed
        """
        self._running = True

        self._client.set_connected_callback(self._handle_connected)
        self._client.set_disconnected_callback(self._handle_disconnected)
        self._client.set_error_callback(self._handle_error)
        self._client.set_ledger_callback(self._handle_ledger)

        self._load_checkpoint()
        self._worker_task = asyncio.create_task(self._ledger_worker())

        try:
            await self._client.connect()
        except LedgerMonitorError:
            await self._stop_worker()
            self._running = False
            raise

        self._logger.info(f"Monitor started, watching {len(self.registry)} addresses")

    async def stop(self):
        """Disconnect, finish queued ledgers and save the checkpoint."""
        if not self._running:
            return
        self._running = False

        await self._client.disconnect()
        await self._stop_worker()
        self._save_checkpoint()

        self._logger.info("Monitor stopped")

    async def wait_idle(self):
        """Wait until every queued ledger has been processed."""
        await self._queue.join()

    @property
    def server_info(self) -> Optional[ServerInfo]:
        return self._server_info

    def get_stats(self) -> Dict:
        return {
            "running": self._running,
            "addresses": len(self.registry),
            "queued_ledgers": self._queue.qsize(),
            "ingestion": self.ingestion.get_stats(),
            "dispatcher": self.dispatcher.get_stats(),
        }

    # =========================================================================
    # Client Events
    # =========================================================================

    async def _handle_connected(self):
        try:
            info = await self._client.get_server_info()
        except Exception as e:
            self._logger.error(f"server_info failed: {e}")
            await self.dispatcher.report_error(
                "server_info_failed", str(e), {"exception": repr(e)}
            )
            await self.bus.publish(EventKind.CONNECTED, None)
            return

        self._server_info = info
        try:
            self.floor.update_from_server_info(info)
        except FloorParseError as e:
            self._logger.warning(
                f"{e.message}; keeping ledger floor {self.floor.current_floor()}"
            )
            await self.dispatcher.report_error(e.code, e.message, e.data)

        await self.bus.publish(EventKind.CONNECTED, info)

    async def _handle_disconnected(self, code: int):
        self._logger.info(f"Disconnected (code {code})")
        await self.bus.publish(EventKind.DISCONNECTED, code)

    async def _handle_error(self, code: str, message: str, data=None):
        self._logger.error(f"Ledger client error {code}: {message}")
        await self.bus.publish(EventKind.ERROR, code, message, data)

    def _handle_ledger(self, ledger: LedgerInfo):
        # Runs on the client's reader; queue and return
        self._queue.put_nowait(ledger)

    # =========================================================================
    # Ingestion Worker
    # =========================================================================

    async def _ledger_worker(self):
        """Process queued ledgers one at a time."""
        while True:
            ledger = await self._queue.get()
            try:
                if ledger is None:
                    return
                await self._process(ledger)
            finally:
                self._queue.task_done()

    async def _process(self, ledger: LedgerInfo):
        last = self.ingestion.last_completed_ledger
        if last is not None and ledger.ledger_version <= last:
            self._logger.debug(f"Skipping ledger {ledger.ledger_version}, already at {last}")
            return

        await self.bus.publish(EventKind.LEDGER, ledger)
        try:
            await self.ingestion.process_ledger(ledger)
        except Exception as e:
            self._logger.error(
                f"Processing ledger {ledger.ledger_version} failed: {e}", exc_info=True
            )
            await self.dispatcher.report_error(
                "ledger_failed",
                f"Processing ledger {ledger.ledger_version} failed: {e}",
                {"ledgerVersion": ledger.ledger_version}
            )
            return

        self._checkpoint["last_completed_ledger"] = ledger.ledger_version
        self._save_checkpoint()

    async def _stop_worker(self):
        if self._worker_task is None:
            return
        self._queue.put_nowait(None)
        await self._worker_task
        self._worker_task = None

    # =========================================================================
    # Checkpoint Management
    # =========================================================================

    def _load_checkpoint(self):
        """Restore address cursors saved by a previous run."""
        if not self._checkpoint_path:
            return

        path = Path(self._checkpoint_path)
        if not path.exists():
            return

        try:
            with open(path, 'r') as f:
                self._checkpoint = json.load(f)
        except (OSError, ValueError) as e:
            self._logger.warning(f"Failed to load checkpoint: {e}")
            self._checkpoint = {}
            return

        applied = self.registry.restore(self._checkpoint.get("cursors", {}))
        self._logger.info(
            f"Loaded checkpoint: ledger {self._checkpoint.get('last_completed_ledger')}, "
            f"{applied} cursors restored"
        )

    def _checkpoint_limit(self) -> Optional[int]:
        """
        Highest cursor a checkpoint may hold: the lowest ledger version with a
        transaction that is requeued or not yet recorded by the store.
        """
        candidates = []
        unrecorded = self.dispatcher.lowest_unrecorded_ledger()
        if unrecorded is not None:
            candidates.append(unrecorded)
        versions = self.pending.versions()
        if versions:
            candidates.append(versions[0])
        return min(candidates) if candidates else None

    def _save_checkpoint(self):
        if not self._checkpoint_path:
            return

        cursors = self.registry.snapshot()
        limit = self._checkpoint_limit()
        if limit is not None:
            # Re-query from the oldest transaction not yet recorded
            cursors = {address: min(cursor, limit) for address, cursor in cursors.items()}
        self._checkpoint["cursors"] = cursors
        self._checkpoint["timestamp"] = time.time()
        try:
            path = Path(self._checkpoint_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w') as f:
                json.dump(self._checkpoint, f)
        except OSError as e:
            self._logger.error(f"Failed to save checkpoint: {e}")
