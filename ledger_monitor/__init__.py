"""
Ledger Monitor

Watches the XRP Ledger for activity touching a set of addresses and
delivers each matching transaction once, across restarts.

Components:
- RippledClient: ledger stream and range queries against a rippled node
- LedgerMonitor: wires the client to the ingestion engine
- indexer: cursors, ledger floor, pending index, dispatcher, ingestion loop
- persistence: durability stores for delivered transactions
- EventBus: publish/subscribe for monitor events
"""

from .client import ClientConfig, RippledClient
from .config import MonitorConfig, load_config
from .errors import (
    ConfigError,
    FloorParseError,
    LedgerConnectionError,
    LedgerMonitorError,
    PersistenceError,
    QueryError,
    UnknownAddress,
)
from .events import EventBus, EventKind
from .monitor import LedgerMonitor
from .types import LedgerInfo, ServerInfo, Transaction

__all__ = [
    "ClientConfig",
    "RippledClient",
    "MonitorConfig",
    "load_config",
    "ConfigError",
    "FloorParseError",
    "LedgerConnectionError",
    "LedgerMonitorError",
    "PersistenceError",
    "QueryError",
    "UnknownAddress",
    "EventBus",
    "EventKind",
    "LedgerMonitor",
    "LedgerInfo",
    "ServerInfo",
    "Transaction",
]
