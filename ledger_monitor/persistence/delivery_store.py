"""
Delivery Stores

Durability gate: remembers which transactions were already delivered so
that a restarted monitor does not deliver them again.

The dedup key is the transaction id alone. A transaction touching several
watched addresses is recorded once.

Implementations:
- SqliteDeliveryStore: delivered_transactions table keyed by id
- TransactionFileStore: one JSON file per transaction, existence = delivered
- MemoryDeliveryStore: in-process set, for tests
"""

import json
import logging
import os
import sqlite3
import time
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional, Protocol, Set

from ..errors import ConfigError, PersistenceError
from ..types import Transaction


# Formatted once to validate tx_filename_format
SAMPLE_TRANSACTION = Transaction(
    id="0" * 64,
    ledger_version=1,
    index_in_ledger=0,
    result="tesSUCCESS",
    type="payment",
    address="rrrrrrrrrrrrrrrrrrrrrhoLvTp",
    timestamp="2000-01-01T00:00:00.000Z",
    sequence=1,
)


def check_filename_format(filename_format: str):
    """
    Raise ConfigError unless filename_format references {id} and formats
    cleanly over transaction fields.
    """
    if "{id}" not in filename_format:
        raise ConfigError(
            f"tx_filename_format must contain {{id}}: {filename_format!r}",
            data=filename_format
        )
    try:
        filename_format.format(**SAMPLE_TRANSACTION.format_fields())
    except (KeyError, IndexError, ValueError, AttributeError) as e:
        raise ConfigError(
            f"tx_filename_format {filename_format!r} is invalid: {e!r}",
            data=filename_format
        )


class DeliveryStore(Protocol):
    """Durability gate interface consumed by the DeliveryDispatcher."""

    def already_delivered(self, tx_id: str) -> bool:
        ...

    def record_delivered(self, tx: Transaction) -> None:
        """Persist delivery. Raises PersistenceError on failure."""
        ...


class MemoryDeliveryStore:
    """Non-durable store. Optionally pre-populated with delivered ids."""

    def __init__(self, delivered: Optional[Set[str]] = None):
        self._delivered: Set[str] = set(delivered or ())
        self.records: List[Transaction] = []

    def already_delivered(self, tx_id: str) -> bool:
        return tx_id in self._delivered

    def record_delivered(self, tx: Transaction) -> None:
        self._delivered.add(tx.id)
        self.records.append(tx)

    def __len__(self) -> int:
        return len(self._delivered)


class SqliteDeliveryStore:
    """
    SQLite persistence of delivered transaction ids.

    Thread-safe with RLock.

    Schema:
        delivered_transactions (
            tx_id TEXT PRIMARY KEY,
            ledger_version INTEGER,
            tx_type TEXT,
            address TEXT,
            record TEXT,          -- JSON transaction record
            delivered_at REAL
        )
    """

    def __init__(self, db_path: str = "data/delivered.db"):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.db_path = db_path
        self._logger = logging.getLogger("SqliteDeliveryStore")
        self._lock = RLock()
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self._create_schema()

    def _create_schema(self):
        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS delivered_transactions (
                tx_id TEXT PRIMARY KEY,
                ledger_version INTEGER NOT NULL,
                tx_type TEXT,
                address TEXT,
                record TEXT,
                delivered_at REAL NOT NULL
            )
        """)
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_delivered_at ON delivered_transactions(delivered_at)"
        )
        self.conn.commit()
        self._logger.info(f"Initialized delivery store: {self.db_path}")

    def already_delivered(self, tx_id: str) -> bool:
        try:
            with self._lock:
                cursor = self.conn.cursor()
                cursor.execute(
                    "SELECT 1 FROM delivered_transactions WHERE tx_id = ?",
                    (tx_id,)
                )
                return cursor.fetchone() is not None
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to check tx {tx_id}: {e}", data=tx_id)

    def record_delivered(self, tx: Transaction) -> None:
        try:
            with self._lock:
                cursor = self.conn.cursor()
                cursor.execute("""
                    INSERT OR IGNORE INTO delivered_transactions
                        (tx_id, ledger_version, tx_type, address, record, delivered_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    tx.id,
                    tx.ledger_version,
                    tx.type,
                    tx.address,
                    json.dumps(tx.to_dict()),
                    time.time()
                ))
                self.conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to record tx {tx.id}: {e}", data=tx.id)

    def load_record(self, tx_id: str) -> Optional[Dict]:
        """Stored JSON record for a delivered transaction."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT record FROM delivered_transactions WHERE tx_id = ?",
                (tx_id,)
            )
            row = cursor.fetchone()
            return json.loads(row['record']) if row else None

    def count(self) -> int:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM delivered_transactions")
            return cursor.fetchone()[0]

    def prune_older_than(self, hours: float) -> int:
        """Delete records older than N hours. Returns rows deleted."""
        cutoff = time.time() - (hours * 3600)
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                "DELETE FROM delivered_transactions WHERE delivered_at < ?",
                (cutoff,)
            )
            deleted = cursor.rowcount
            self.conn.commit()
            return deleted

    def close(self):
        with self._lock:
            self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class TransactionFileStore:
    """
    One JSON file per delivered transaction.

    The filename is filename_format.format(**tx.format_fields()), e.g.
    "tx/{ledger_version}-{id}.json". Besides marking delivery, the files are
    a permanent record that outlives the node's retained history.

    already_delivered() only receives an id, so the format must be
    resolvable from the id: ids of transactions recorded in this process
    are remembered, and on startup existing files are indexed by the id
    stored inside them.
    """

    def __init__(self, filename_format: str, directory: Optional[str] = None):
        check_filename_format(filename_format)
        self.filename_format = filename_format
        self.directory = Path(directory) if directory else None
        self._logger = logging.getLogger("TransactionFileStore")
        self._lock = RLock()
        self._known_ids: Set[str] = set()
        self._load_existing()

    def path_for(self, tx: Transaction) -> Path:
        path = Path(self.filename_format.format(**tx.format_fields()))
        if self.directory is not None and not path.is_absolute():
            path = self.directory / path
        return path

    def _search_root(self) -> Optional[Path]:
        """Fixed directory prefix of the format, or None for the bare cwd."""
        fixed = os.path.dirname(self.filename_format.split("{", 1)[0])
        if self.directory is None and not fixed:
            return None
        return (self.directory or Path(".")) / fixed

    def _load_existing(self):
        root = self._search_root()
        if root is None:
            # Files land in the working directory; don't walk it recursively
            root = Path(".")
            candidates = root.glob("*")
        elif root.is_dir():
            candidates = root.rglob("*")
        else:
            return

        for path in candidates:
            if not path.is_file():
                continue
            try:
                with open(path, 'r') as f:
                    record = json.load(f)
            except (OSError, ValueError):
                continue
            if isinstance(record, dict) and isinstance(record.get('id'), str):
                self._known_ids.add(record['id'])

        self._logger.info(f"Indexed {len(self._known_ids)} saved transactions under {root}")

    def already_delivered(self, tx_id: str) -> bool:
        with self._lock:
            return tx_id in self._known_ids

    def record_delivered(self, tx: Transaction) -> None:
        try:
            path = self.path_for(tx)
        except (KeyError, IndexError, ValueError, AttributeError) as e:
            raise PersistenceError(
                f"Cannot name file for tx {tx.id} with {self.filename_format!r}: {e!r}",
                data=tx.id
            )

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w') as f:
                json.dump(tx.to_dict(), f, indent=2)
        except OSError as e:
            raise PersistenceError(f"Failed to write {path}: {e}", data=str(path))

        with self._lock:
            self._known_ids.add(tx.id)
        self._logger.debug(f"Wrote transaction file {path}")
