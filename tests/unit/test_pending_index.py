"""
Unit tests for the Pending Transaction Index.

Tests:
- Idempotent insert per (ledger version, id)
- Observing addresses accumulate on one entry
- flush_up_to bounds and ordering
"""

import pytest

from ledger_monitor.indexer import PendingTxIndex
from ledger_monitor.types import Transaction


def make_tx(tx_id: str, ledger_version: int, index: int = 0, address: str = "rSource") -> Transaction:
    return Transaction(
        id=tx_id,
        ledger_version=ledger_version,
        index_in_ledger=index,
        result="tesSUCCESS",
        type="payment",
        address=address,
    )


class TestInsert:
    """Test buffered inserts."""

    @pytest.fixture
    def index(self):
        return PendingTxIndex()

    def test_insert_new(self, index):
        assert index.insert(10, make_tx("A", 10), "rAlice") is True
        assert index.contains(10, "A")
        assert len(index) == 1

    def test_insert_same_pair_twice_stores_one(self, index):
        """Inserting the same (ledger, id) twice leaves one entry."""
        index.insert(10, make_tx("A", 10), "rAlice")
        assert index.insert(10, make_tx("A", 10), "rAlice") is False

        assert len(index) == 1
        assert index.versions() == [10]

    def test_duplicate_keeps_first_transaction(self, index):
        first = make_tx("A", 10, index=3)
        index.insert(10, first, "rAlice")
        index.insert(10, make_tx("A", 10, index=9), "rAlice")

        assert index.get(10, "A").transaction is first

    def test_second_address_recorded_on_same_entry(self, index):
        """A tx seen by two watched addresses is one entry with both addresses."""
        index.insert(10, make_tx("A", 10), "rAlice")
        index.insert(10, make_tx("A", 10), "rBob")

        assert len(index) == 1
        assert index.get(10, "A").addresses == {"rAlice", "rBob"}

    def test_same_id_different_ledgers_kept_apart(self, index):
        index.insert(10, make_tx("A", 10), "rAlice")
        index.insert(11, make_tx("A", 11), "rAlice")

        assert len(index) == 2
        assert index.versions() == [10, 11]


class TestFlush:
    """Test flush_up_to."""

    @pytest.fixture
    def index(self):
        index = PendingTxIndex()
        index.insert(30, make_tx("C", 30, index=1), "rAlice")
        index.insert(10, make_tx("A", 10, index=0), "rAlice")
        index.insert(30, make_tx("B", 30, index=0), "rAlice")
        index.insert(50, make_tx("D", 50, index=0), "rAlice")
        return index

    def test_flush_only_up_to_version(self, index):
        flushed = index.flush_up_to(30)

        assert [e.tx_id for e in flushed] == ["A", "B", "C"]
        assert index.versions() == [50]
        assert len(index) == 1

    def test_flush_orders_by_ledger_then_index(self, index):
        flushed = index.flush_up_to(100)

        assert [(e.ledger_version, e.transaction.index_in_ledger) for e in flushed] == [
            (10, 0), (30, 0), (30, 1), (50, 0)
        ]

    def test_flush_removes_entries(self, index):
        index.flush_up_to(100)

        assert len(index) == 0
        assert index.flush_up_to(100) == []

    def test_flush_below_all_versions_is_empty(self, index):
        assert index.flush_up_to(5) == []
        assert len(index) == 4

    def test_insert_after_flush_is_kept(self, index):
        index.flush_up_to(30)
        index.insert(30, make_tx("E", 30), "rAlice")

        assert index.contains(30, "E")
        assert [e.tx_id for e in index.flush_up_to(30)] == ["E"]


class TestRequeue:
    """Flushed entries can be put back for the next flush."""

    def test_requeued_entry_flushed_again(self):
        index = PendingTxIndex()
        index.insert(10, make_tx("A", 10), "rAlice")
        index.insert(10, make_tx("A", 10), "rBob")
        [entry] = index.flush_up_to(10)

        index.requeue(entry)

        assert index.versions() == [10]
        [again] = index.flush_up_to(20)
        assert again.tx_id == "A"
        assert again.addresses == {"rAlice", "rBob"}

    def test_requeue_merges_with_new_observation(self):
        index = PendingTxIndex()
        index.insert(10, make_tx("A", 10), "rAlice")
        [entry] = index.flush_up_to(10)
        index.insert(10, make_tx("A", 10), "rBob")

        index.requeue(entry)

        assert len(index) == 1
        assert index.get(10, "A").addresses == {"rAlice", "rBob"}
