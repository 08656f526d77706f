"""
Unit tests for the IngestionLoop.

Tests:
- Query lower bound = max(cursor, floor)
- Cursor advances only after a successful query
- Failed queries are retried from the same lower bound
- Shared transactions notify each watched address once, record once
- LEDGER_COMPLETE follows every delivery for that ledger
- Restart suppression through the durability gate
"""

import sqlite3

import pytest

from ledger_monitor.errors import PersistenceError
from ledger_monitor.events import EventBus, EventKind
from ledger_monitor.indexer import (
    AddressRegistry,
    DeliveryDispatcher,
    IngestionLoop,
    LedgerFloorTracker,
    PendingTxIndex,
)
from ledger_monitor.mock_data import MockLedgerClient
from ledger_monitor.persistence import MemoryDeliveryStore
from ledger_monitor.types import LedgerInfo

class FailingStore(MemoryDeliveryStore):
    """Store whose writes always fail."""

    def record_delivered(self, tx):
        raise PersistenceError(f"disk full writing {tx.id}")


class Harness:
    """Ingestion loop wired to a mock client and an event log."""

    def __init__(self, addresses, store=None, complete_ledgers=None, seed=7):
        self.client = MockLedgerClient(seed=seed)
        self.bus = EventBus()
        self.store = store if store is not None else MemoryDeliveryStore()
        self.registry = AddressRegistry()
        self.floor = LedgerFloorTracker()
        self.pending = PendingTxIndex()
        self.dispatcher = DeliveryDispatcher(self.bus, self.store)
        self.loop = IngestionLoop(
            self.client, self.registry, self.floor, self.pending, self.dispatcher
        )

        if complete_ledgers is not None:
            self.floor.update_from_server_info(complete_ledgers)

        # Ordered log of (event, payload)
        self.events = []
        for address in addresses:
            self.registry.register(address)
            self.bus.subscribe(
                EventKind.ADDRESS_ACTIVITY,
                lambda tx, affected, a=address: self.events.append(("activity", a, tx.id)),
                address=address
            )
        self.bus.subscribe(
            EventKind.LEDGER_COMPLETE,
            lambda v: self.events.append(("complete", v))
        )
        self.bus.subscribe(
            EventKind.ERROR,
            lambda code, msg, data: self.events.append(("error", code, data))
        )

    async def ledger(self, version: int):
        return await self.loop.process_ledger(LedgerInfo(ledger_version=version))

    def activity(self, address=None):
        return [
            e[2] for e in self.events
            if e[0] == "activity" and (address is None or e[1] == address)
        ]

    def errors(self):
        return [e for e in self.events if e[0] == "error"]


class TestQueryBounds:
    """Lower bound selection."""

    @pytest.mark.asyncio
    async def test_floor_raises_lower_bound(self):
        """New address (cursor 1) with retained range 100-200 queries from 150."""
        h = Harness(["rA"], complete_ledgers="100-200")

        await h.ledger(210)

        assert h.client.queries == [("rA", 150, 210)]
        assert h.registry.cursor_for("rA") == 210

    @pytest.mark.asyncio
    async def test_cursor_above_floor_wins(self):
        h = Harness(["rA"], complete_ledgers="100-200")
        h.registry.advance_cursor("rA", 190)

        await h.ledger(210)

        assert h.client.queries == [("rA", 190, 210)]

    @pytest.mark.asyncio
    async def test_range_queried_and_cursor_advanced(self):
        """Cursor 10, ledger 50: txs at 10..50 fetched, cursor -> 50."""
        h = Harness(["rX"])
        h.registry.advance_cursor("rX", 10)
        txs = {}
        for version in [5, 10, 30, 30, 50, 60]:
            tx = h.client.make_transaction(version, "rX")
            h.client.add_transaction(tx)
            txs.setdefault(version, []).append(tx.id)

        result = await h.ledger(50)

        assert h.client.queries == [("rX", 10, 50)]
        assert h.registry.cursor_for("rX") == 50
        assert result.transactions_seen == 4
        assert h.activity("rX") == txs[10] + txs[30] + txs[50]

    @pytest.mark.asyncio
    async def test_skip_when_lower_bound_above_ledger(self):
        h = Harness(["rA"])
        h.registry.advance_cursor("rA", 100)

        result = await h.ledger(90)

        assert h.client.queries == []
        assert result.skipped == ["rA"]
        assert h.registry.cursor_for("rA") == 100
        assert h.events == [("complete", 90)]

    @pytest.mark.asyncio
    async def test_floor_above_ledger_skips(self):
        h = Harness(["rA"], complete_ledgers="100-200")

        result = await h.ledger(120)

        assert result.skipped == ["rA"]
        assert h.client.queries == []


class TestQueryFailure:
    """A failed query does not move the cursor."""

    @pytest.mark.asyncio
    async def test_failure_keeps_cursor_and_reports(self):
        h = Harness(["rX"])
        h.registry.advance_cursor("rX", 10)
        h.client.fail_next("rX")

        result = await h.ledger(50)

        assert h.registry.cursor_for("rX") == 10
        assert "rX" in result.failed
        errors = h.errors()
        assert len(errors) == 1
        assert errors[0][1] == "query_failed"
        assert errors[0][2]["address"] == "rX"
        assert errors[0][2]["minLedgerVersion"] == 10
        assert errors[0][2]["maxLedgerVersion"] == 50
        # Ledger still completes
        assert h.events[-1] == ("complete", 50)

    @pytest.mark.asyncio
    async def test_retry_uses_same_lower_bound(self):
        """Next ledger re-queries from the unchanged cursor."""
        h = Harness(["rX"])
        h.registry.advance_cursor("rX", 10)
        tx = h.client.make_transaction(20, "rX")
        h.client.add_transaction(tx)
        h.client.fail_next("rX")

        await h.ledger(50)
        await h.ledger(51)

        assert h.client.queries == [("rX", 10, 50), ("rX", 10, 51)]
        assert h.registry.cursor_for("rX") == 51
        assert h.activity("rX") == [tx.id]

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_other_addresses(self):
        h = Harness(["rA", "rB"])
        tx = h.client.make_transaction(5, "rB")
        h.client.add_transaction(tx)
        h.client.fail_next("rA")

        result = await h.ledger(10)

        assert list(result.failed) == ["rA"]
        assert result.queried == ["rB"]
        assert h.activity("rB") == [tx.id]
        assert h.registry.cursor_for("rA") == 1
        assert h.registry.cursor_for("rB") == 10

    @pytest.mark.asyncio
    async def test_unexpected_client_error_wrapped(self):
        h = Harness(["rA"])

        async def broken(*args, **kwargs):
            raise RuntimeError("socket gone")

        h.client.get_transactions = broken

        result = await h.ledger(10)

        assert "rA" in result.failed
        assert h.errors()[0][1] == "query_failed"
        assert h.registry.cursor_for("rA") == 1


class TestDelivery:
    """Exactly-once notification per (address, tx)."""

    @pytest.mark.asyncio
    async def test_shared_tx_notifies_both_records_once(self):
        """Payment from rA to rB: each subscriber once, one durable record."""
        h = Harness(["rA", "rB"])
        tx = h.client.make_transaction(30, "rA", tx_type="payment")
        h.client.add_transaction(tx, affects=["rB"])

        await h.ledger(30)

        assert h.activity("rA") == [tx.id]
        assert h.activity("rB") == [tx.id]
        assert len(h.store.records) == 1

    @pytest.mark.asyncio
    async def test_overlapping_ranges_no_duplicate(self):
        """The boundary ledger is queried twice but delivered once."""
        h = Harness(["rA"])
        tx = h.client.make_transaction(50, "rA")
        h.client.add_transaction(tx)

        await h.ledger(50)
        await h.ledger(60)

        assert h.client.queries == [("rA", 1, 50), ("rA", 50, 60)]
        assert h.activity("rA") == [tx.id]

    @pytest.mark.asyncio
    async def test_overlap_without_durable_record_no_duplicate(self):
        """A failing store must not lead to repeat delivery in-process."""
        h = Harness(["rA"], store=FailingStore())
        tx = h.client.make_transaction(50, "rA")
        h.client.add_transaction(tx)

        await h.ledger(50)
        await h.ledger(60)

        assert h.activity("rA") == [tx.id]
        assert [e[1] for e in h.errors()] == ["persistence_failed"]

    @pytest.mark.asyncio
    async def test_restart_suppresses_recorded(self):
        """Ids already in the store are not delivered again."""
        client_seed = 3
        first = Harness(["rA"], seed=client_seed)
        tx = first.client.make_transaction(10, "rA")
        first.client.add_transaction(tx)
        await first.ledger(10)
        assert first.activity("rA") == [tx.id]

        restarted = Harness(["rA"], store=MemoryDeliveryStore({tx.id}), seed=client_seed)
        restarted.client.add_transaction(tx)
        result = await restarted.ledger(10)

        assert restarted.activity("rA") == []
        assert result.transactions_seen == 1
        assert result.transactions_delivered == 0

    @pytest.mark.asyncio
    async def test_failed_transactions_delivered(self):
        """Failed results are still activity on the address."""
        h = Harness(["rA"])
        tx = h.client.make_transaction(5, "rA", result="tecUNFUNDED_PAYMENT")
        h.client.add_transaction(tx)

        await h.ledger(5)

        assert h.activity("rA") == [tx.id]


class TestJoinBarrier:
    """LEDGER_COMPLETE follows every delivery for the ledger."""

    @pytest.mark.asyncio
    async def test_complete_after_slow_address(self):
        h = Harness(["rSlow", "rFast"])
        slow_tx = h.client.make_transaction(20, "rSlow")
        fast_tx = h.client.make_transaction(20, "rFast")
        h.client.add_transaction(slow_tx)
        h.client.add_transaction(fast_tx)
        h.client.delays["rSlow"] = 0.05

        await h.ledger(20)

        assert h.events[-1] == ("complete", 20)
        assert set(h.activity()) == {slow_tx.id, fast_tx.id}

    @pytest.mark.asyncio
    async def test_delivery_in_ledger_order(self):
        h = Harness(["rA", "rB"])
        later = h.client.make_transaction(40, "rA")
        earlier = h.client.make_transaction(15, "rB")
        h.client.add_transaction(later)
        h.client.add_transaction(earlier)
        h.client.delays["rB"] = 0.02

        await h.ledger(40)

        assert h.activity() == [earlier.id, later.id]

    @pytest.mark.asyncio
    async def test_last_completed_tracked(self):
        h = Harness(["rA"])

        await h.ledger(12)

        assert h.loop.last_completed_ledger == 12
        stats = h.loop.get_stats()
        assert stats["ledgers_processed"] == 1
        assert stats["pending"] == 0


class LockedOnceStore(MemoryDeliveryStore):
    """Store whose first delivered-check hits a locked database."""

    def __init__(self):
        super().__init__()
        self.locked = True

    def already_delivered(self, tx_id):
        if self.locked:
            self.locked = False
            raise sqlite3.OperationalError("database is locked")
        return super().already_delivered(tx_id)


class RecoveringStore(MemoryDeliveryStore):
    """Store whose writes fail until healed."""

    def __init__(self):
        super().__init__()
        self.broken = True

    def record_delivered(self, tx):
        if self.broken:
            raise PersistenceError(f"disk full writing {tx.id}")
        super().record_delivered(tx)


class TestStoreFailures:
    """A misbehaving store never loses a flushed transaction."""

    @pytest.mark.asyncio
    async def test_failed_check_retried_next_ledger(self):
        h = Harness(["rA"], store=LockedOnceStore())
        first = h.client.make_transaction(20, "rA")
        second = h.client.make_transaction(21, "rA")
        h.client.add_transaction(first)
        h.client.add_transaction(second)

        await h.ledger(50)
        await h.ledger(51)
        await h.ledger(52)

        assert sorted(h.activity("rA")) == sorted([first.id, second.id])
        assert [e for e in h.events if e[0] == "complete"] == [
            ("complete", 50), ("complete", 51), ("complete", 52)
        ]
        assert [e[1] for e in h.errors()] == ["persistence_failed"]
        assert len(h.pending) == 0
        assert sorted(t.id for t in h.store.records) == sorted([first.id, second.id])

    @pytest.mark.asyncio
    async def test_failed_record_retried_when_store_recovers(self):
        store = RecoveringStore()
        h = Harness(["rA"], store=store)
        tx = h.client.make_transaction(20, "rA")
        h.client.add_transaction(tx)

        await h.ledger(50)
        assert h.dispatcher.lowest_unrecorded_ledger() == 20

        store.broken = False
        await h.ledger(51)

        assert h.activity("rA") == [tx.id]
        assert store.already_delivered(tx.id)
        assert h.dispatcher.lowest_unrecorded_ledger() is None
