"""
Ledger Monitor Errors

Every error raised by the monitor derives from LedgerMonitorError.
Only ConfigError and the initial LedgerConnectionError are fatal; the rest
are contained by the ingestion loop and reported on the ERROR event channel.
"""

from typing import Any, Optional


class LedgerMonitorError(Exception):
    """Base class for ledger monitor errors."""

    # Error code published with the ERROR event
    code = "monitor_error"

    def __init__(self, message: str, data: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.data = data


class LedgerConnectionError(LedgerMonitorError):
    """Connection to the ledger node failed or was lost."""
    code = "connection_error"


class QueryError(LedgerMonitorError):
    """A transaction range query for one address failed."""
    code = "query_failed"

    def __init__(
        self,
        message: str,
        address: Optional[str] = None,
        min_ledger_version: Optional[int] = None,
        max_ledger_version: Optional[int] = None,
        data: Optional[Any] = None
    ):
        super().__init__(message, data)
        self.address = address
        self.min_ledger_version = min_ledger_version
        self.max_ledger_version = max_ledger_version


class FloorParseError(LedgerMonitorError):
    """The retained ledger range reported by the server is malformed."""
    code = "floor_parse_failed"


class PersistenceError(LedgerMonitorError):
    """The durability gate could not record a delivered transaction."""
    code = "persistence_failed"


class UnknownAddress(LedgerMonitorError, KeyError):
    """Address is not registered with the monitor."""
    code = "unknown_address"

    def __str__(self) -> str:
        return self.message


class ConfigError(LedgerMonitorError):
    """Configuration is missing or invalid."""
    code = "config_error"
