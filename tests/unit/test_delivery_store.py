"""
Unit tests for the durability stores.

Tests:
- SQLite: record/check, duplicate record, reopen survives, failure -> PersistenceError
- File store: filename format, restart recovery from existing files
"""

import json
import os
import tempfile

import pytest

from ledger_monitor.errors import ConfigError, PersistenceError
from ledger_monitor.persistence import (
    MemoryDeliveryStore,
    SqliteDeliveryStore,
    TransactionFileStore,
)
from ledger_monitor.types import Transaction


def make_tx(tx_id: str = "ABC123", ledger_version: int = 100) -> Transaction:
    return Transaction(
        id=tx_id,
        ledger_version=ledger_version,
        index_in_ledger=2,
        result="tesSUCCESS",
        type="payment",
        address="rSource",
        timestamp="2017-06-20T17:04:51.000Z",
        sequence=7,
        fee="0.000012",
    )


class TestMemoryStore:

    def test_prepopulated(self):
        store = MemoryDeliveryStore({"T1"})
        assert store.already_delivered("T1")
        assert not store.already_delivered("T2")

    def test_record(self):
        store = MemoryDeliveryStore()
        store.record_delivered(make_tx("T2"))

        assert store.already_delivered("T2")
        assert len(store) == 1


class TestSqliteStore:
    """Test SQLite delivery persistence."""

    def setup_method(self):
        fd, self.temp_db = tempfile.mkstemp(suffix='.db')
        os.close(fd)
        self.store = SqliteDeliveryStore(self.temp_db)

    def teardown_method(self):
        try:
            self.store.close()
        except Exception:
            pass
        try:
            os.remove(self.temp_db)
        except (PermissionError, FileNotFoundError):
            pass

    def test_record_and_check(self):
        assert not self.store.already_delivered("ABC123")

        self.store.record_delivered(make_tx())

        assert self.store.already_delivered("ABC123")
        assert self.store.count() == 1

    def test_duplicate_record_ignored(self):
        self.store.record_delivered(make_tx())
        self.store.record_delivered(make_tx())

        assert self.store.count() == 1

    def test_record_is_transaction_json(self):
        self.store.record_delivered(make_tx())

        record = self.store.load_record("ABC123")
        assert record["id"] == "ABC123"
        assert record["outcome"]["ledgerVersion"] == 100
        assert record["outcome"]["indexInLedger"] == 2
        assert self.store.load_record("missing") is None

    def test_survives_reopen(self):
        """Records persist across store instances (process restart)."""
        self.store.record_delivered(make_tx())
        self.store.close()

        self.store = SqliteDeliveryStore(self.temp_db)
        assert self.store.already_delivered("ABC123")

    def test_prune_keeps_recent(self):
        self.store.record_delivered(make_tx())

        assert self.store.prune_older_than(hours=1) == 0
        assert self.store.count() == 1

    def test_write_failure_raises_persistence_error(self):
        self.store.close()

        with pytest.raises(PersistenceError):
            self.store.record_delivered(make_tx())


class TestFileStore:
    """Test one-file-per-transaction persistence."""

    def test_format_requires_id(self, tmp_path):
        with pytest.raises(ConfigError):
            TransactionFileStore("tx/{ledger_version}.json", directory=str(tmp_path))

    def test_record_writes_formatted_file(self, tmp_path):
        store = TransactionFileStore("tx/{ledger_version}-{id}.json", directory=str(tmp_path))
        tx = make_tx()

        store.record_delivered(tx)

        path = tmp_path / "tx" / "100-ABC123.json"
        assert path.exists()
        with open(path) as f:
            record = json.load(f)
        assert record["id"] == "ABC123"
        assert record["type"] == "payment"
        assert store.already_delivered("ABC123")

    def test_restart_recovers_from_existing_files(self, tmp_path):
        """A new store instance treats existing files as delivered."""
        TransactionFileStore("tx/{ledger_version}-{id}.json", directory=str(tmp_path)).record_delivered(make_tx())

        restarted = TransactionFileStore("tx/{ledger_version}-{id}.json", directory=str(tmp_path))

        assert restarted.already_delivered("ABC123")
        assert not restarted.already_delivered("OTHER")

    def test_unrelated_files_ignored(self, tmp_path):
        (tmp_path / "tx").mkdir()
        (tmp_path / "tx" / "notes.txt").write_text("not json")
        (tmp_path / "tx" / "list.json").write_text("[1, 2]")

        store = TransactionFileStore("tx/{id}.json", directory=str(tmp_path))

        assert not store.already_delivered("ABC123")

    def test_write_failure_raises_persistence_error(self, tmp_path):
        # A file where the directory should be
        (tmp_path / "tx").write_text("blocker")
        store = TransactionFileStore("tx/{id}.json", directory=str(tmp_path))

        with pytest.raises(PersistenceError):
            store.record_delivered(make_tx())

        assert not store.already_delivered("ABC123")


class TestStoreFailuresAreContained:
    """Every store failure surfaces as PersistenceError or ConfigError."""

    def test_sqlite_check_failure_raises_persistence_error(self, tmp_path):
        store = SqliteDeliveryStore(str(tmp_path / "d.db"))
        store.close()

        with pytest.raises(PersistenceError):
            store.already_delivered("ABC123")

    def test_unknown_format_field_rejected_up_front(self, tmp_path):
        """A format naming a field transactions don't have fails at construction."""
        with pytest.raises(ConfigError):
            TransactionFileStore("tx/{id}-{hash}.json", directory=str(tmp_path))

    def test_format_failure_on_write_raises_persistence_error(self, tmp_path):
        """A format that only breaks for some transactions fails that write only."""
        store = TransactionFileStore("tx/{id}-{sequence:05d}.json", directory=str(tmp_path))
        tx = Transaction(
            id="NOSEQ",
            ledger_version=5,
            index_in_ledger=0,
            result="tesSUCCESS",
            type="payment",
            address="rSource",
        )

        with pytest.raises(PersistenceError):
            store.record_delivered(tx)

        assert not store.already_delivered("NOSEQ")
        store.record_delivered(make_tx())
        assert (tmp_path / "tx" / "ABC123-00007.json").exists()
