"""
ledger-monitor command line

Monitors the XRP Ledger for activity affecting one or more addresses. Each
new transaction is recorded by the durability store and printed as a short
line on stdout. Stopping and restarting loses nothing as long as the gap is
shorter than the node's retained history.

Usage:
    ledger-monitor [-c CONF] [-a] [-v] [address ...]
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from .client import RippledClient
from .config import DEFAULT_CONFIG_PATH, MonitorConfig, load_config
from .errors import ConfigError, LedgerConnectionError
from .events import EventKind
from .monitor import LedgerMonitor
from .persistence import MemoryDeliveryStore, SqliteDeliveryStore, TransactionFileStore
from .types import Transaction


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledger-monitor",
        description="Watch XRP Ledger addresses and report each transaction once."
    )
    parser.add_argument(
        "addresses", nargs="*", metavar="address",
        help="Addresses to monitor (default: addresses from the config file)"
    )
    parser.add_argument(
        "-c", "--conf", metavar="FILE",
        help=f"Use configuration file instead of {DEFAULT_CONFIG_PATH}"
    )
    parser.add_argument(
        "-a", "--altnet", action="store_true",
        help="Use the altnet instead of the live network"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging"
    )
    return parser


def format_activity(tx: Transaction, affected_address: str, config: MonitorConfig) -> str:
    """One console line per delivered transaction."""
    line = (
        f"{tx.timestamp} {tx.ledger_version}.{tx.index_in_ledger} {tx.result} "
        f"{tx.id} {tx.type} by {config.format_address(tx.address)}"
    )
    if affected_address != tx.address:
        line += f" affected {config.format_address(affected_address)}"
    return line


def create_store(config: MonitorConfig):
    if config.store == "sqlite":
        return SqliteDeliveryStore(config.db_path)
    if config.store == "memory":
        return MemoryDeliveryStore()
    return TransactionFileStore(config.tx_filename_format)


async def run(config: MonitorConfig) -> int:
    logger = logging.getLogger("ledger-monitor")

    client = RippledClient(config.client_config())
    store = create_store(config)
    monitor = LedgerMonitor(client, store, checkpoint_path=config.checkpoint_path)

    def print_activity(tx: Transaction, affected_address: str):
        print(format_activity(tx, affected_address, config), flush=True)

    def print_error(code, message, data=None):
        print(f"LedgerMonitor emitted error.  {code}: {message}", file=sys.stderr)
        logger.debug(f"Error data: {data}")

    for address in config.addresses:
        monitor.add_address(address)
        monitor.subscribe(EventKind.ADDRESS_ACTIVITY, print_activity, address=address)
    monitor.subscribe(EventKind.ERROR, print_error)
    monitor.subscribe(EventKind.CONNECTED, lambda info: logger.debug(f"Connected: {info}"))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass  # Windows: KeyboardInterrupt ends asyncio.run instead

    logger.info(f"Connecting to {config.rippled}...")
    try:
        await monitor.start()
    except LedgerConnectionError as e:
        print(f"Failed to connect: {e}", file=sys.stderr)
        return 1

    logger.info("Connected and waiting for ledger events.")
    try:
        await stop_event.wait()
    finally:
        await monitor.stop()
        if isinstance(store, SqliteDeliveryStore):
            store.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.conf, altnet=args.altnet)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.addresses:
        config.addresses = list(args.addresses)
    if not config.addresses:
        print("You must specify one or more addresses to monitor.", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger("ledger-monitor").debug(
        f"Starting ledger-monitor, watching {len(config.addresses)} addresses"
    )

    try:
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        print("\nStopped")
        return 0


if __name__ == "__main__":
    sys.exit(main())
