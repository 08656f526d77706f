"""
rippled Client

WebSocket client for a rippled node, with an optional JSON-RPC (HTTP)
transport for request/response commands.

Provides:
- Ledger stream subscription ("ledgerClosed" messages)
- server_info (retained ledger range)
- account_tx range queries with marker pagination
- Automatic reconnection with exponential backoff

API Documentation: https://xrpl.org/docs/references/http-websocket-apis
"""

import asyncio
import inspect
import itertools
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import aiohttp
import websockets

from .errors import LedgerConnectionError, QueryError
from .types import LedgerInfo, ServerInfo, Transaction


# Public endpoints
MAINNET_WS_URL = "wss://xrplcluster.com"
ALTNET_WS_URL = "wss://s.altnet.rippletest.net:51233"

# Seconds between the Unix epoch and the Ripple epoch (2000-01-01)
RIPPLE_EPOCH_OFFSET = 946684800

# Close code reported when the socket dropped without a close frame
ABNORMAL_CLOSURE = 1006

# TransactionType -> type name used in delivered records
TRANSACTION_TYPES = {
    "Payment": "payment",
    "OfferCreate": "order",
    "OfferCancel": "orderCancellation",
    "TrustSet": "trustline",
    "AccountSet": "settings",
    "SetRegularKey": "settings",
    "SignerListSet": "settings",
    "EscrowCreate": "escrowCreation",
    "EscrowFinish": "escrowExecution",
    "EscrowCancel": "escrowCancellation",
    "PaymentChannelCreate": "paymentChannelCreate",
    "PaymentChannelFund": "paymentChannelFund",
    "PaymentChannelClaim": "paymentChannelClaim",
    "CheckCreate": "checkCreate",
    "CheckCash": "checkCash",
    "CheckCancel": "checkCancel",
}


@dataclass
class ClientConfig:
    """Configuration for the rippled client."""
    url: str = MAINNET_WS_URL
    rpc_url: Optional[str] = None  # JSON-RPC endpoint for commands; None = use WebSocket
    request_timeout: float = 20.0
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 60.0
    ping_interval: float = 30.0
    page_limit: int = 200  # account_tx page size


# =============================================================================
# Parsing
# =============================================================================

def ripple_time_to_iso(seconds: Optional[int]) -> Optional[str]:
    """Convert Ripple epoch seconds to an ISO-8601 UTC timestamp."""
    if seconds is None:
        return None
    moment = datetime.fromtimestamp(int(seconds) + RIPPLE_EPOCH_OFFSET, tz=timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%S.000Z')


def transaction_type_name(transaction_type: str) -> str:
    if transaction_type in TRANSACTION_TYPES:
        return TRANSACTION_TYPES[transaction_type]
    if not transaction_type:
        return "unknown"
    return transaction_type[0].lower() + transaction_type[1:]


def parse_account_tx_entry(entry: Dict[str, Any]) -> Transaction:
    """
    Convert one account_tx entry to a Transaction.

    Handles both API v1 ({"tx": {..., "hash", "ledger_index"}, "meta"}) and
    API v2 ({"tx_json": {...}, "hash", "ledger_index", "meta"}) layouts.
    """
    tx = entry.get('tx') or entry.get('tx_json') or {}
    meta = entry.get('meta') or {}
    if not isinstance(meta, dict):
        raise ValueError("binary metadata is not supported")

    tx_hash = tx.get('hash') or entry.get('hash')
    ledger_index = tx.get('ledger_index', entry.get('ledger_index'))
    if not tx_hash or ledger_index is None:
        raise ValueError(f"account_tx entry without hash or ledger_index: {entry!r}")

    outcome = {}
    if 'delivered_amount' in meta:
        outcome['deliveredAmount'] = meta['delivered_amount']

    timestamp = ripple_time_to_iso(tx.get('date'))
    if timestamp is None:
        timestamp = entry.get('close_time_iso')

    return Transaction(
        id=tx_hash,
        ledger_version=int(ledger_index),
        index_in_ledger=int(meta.get('TransactionIndex', 0)),
        result=meta.get('TransactionResult', 'unknown'),
        type=transaction_type_name(tx.get('TransactionType', '')),
        address=tx.get('Account', ''),
        timestamp=timestamp,
        sequence=tx.get('Sequence'),
        fee=tx.get('Fee'),
        specification={k: v for k, v in tx.items() if k not in ('hash', 'ledger_index', 'date')},
        outcome=outcome,
    )


def parse_ledger_closed(message: Dict[str, Any]) -> LedgerInfo:
    """Convert a ledgerClosed stream message (or subscribe result) to LedgerInfo."""
    return LedgerInfo(
        ledger_version=int(message['ledger_index']),
        ledger_hash=message.get('ledger_hash'),
        ledger_timestamp=ripple_time_to_iso(message.get('ledger_time')),
        transaction_count=int(message.get('txn_count', 0)),
        validated_ledgers=message.get('validated_ledgers'),
    )


def parse_server_info(result: Dict[str, Any]) -> ServerInfo:
    info = result.get('info', {})
    validated = info.get('validated_ledger') or {}
    return ServerInfo(
        complete_ledgers=info.get('complete_ledgers', ''),
        build_version=info.get('build_version'),
        server_state=info.get('server_state'),
        validated_ledger_version=validated.get('seq'),
        raw=info,
    )


# =============================================================================
# Client
# =============================================================================

class RippledClient:
    """
    rippled WebSocket client.

    Callbacks (sync or async):
    - connected()                   after each (re)connection and subscribe
    - disconnected(code)            after the socket closes
    - error(code, message, data)    unsolicited server errors
    - ledger(LedgerInfo)            every closed ledger

    The ledger callback runs on the reader task; it must return quickly
    (e.g. enqueue) because responses to queries are read by the same task.

    Usage:
        client = RippledClient(ClientConfig(url="wss://..."))
        client.set_ledger_callback(on_ledger)
        await client.connect()
        info = await client.get_server_info()
        txs = await client.get_transactions("r...", 100, 200)
        await client.disconnect()
    """

    def __init__(self, config: Optional[ClientConfig] = None):
        self.config = config or ClientConfig()
        self._logger = logging.getLogger("RippledClient")

        # Connection state
        self._running = False
        self._ws = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._run_task: Optional[asyncio.Task] = None
        self._first_connect: Optional[asyncio.Future] = None

        # Outstanding WebSocket requests: id -> future
        self._request_ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}

        # Callbacks
        self._on_connected: Optional[Callable] = None
        self._on_disconnected: Optional[Callable] = None
        self._on_error: Optional[Callable] = None
        self._on_ledger: Optional[Callable] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self):
        """
        Connect and subscribe to the ledger stream.

        Raises:
            LedgerConnectionError: the first connection attempt failed
        """
        if self._running:
            return

        self._running = True
        if self.config.rpc_url:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )

        self._first_connect = asyncio.get_running_loop().create_future()
        self._run_task = asyncio.create_task(self._run())

        try:
            await self._first_connect
        except LedgerConnectionError:
            await self.disconnect()
            raise

    async def disconnect(self):
        """Close the connection and stop reconnecting."""
        self._running = False
        was_connected = self._ws is not None

        if self._ws is not None:
            await self._ws.close()

        if self._run_task is not None and self._run_task is not asyncio.current_task():
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
            self._run_task = None

        if self._session is not None:
            await self._session.close()
            self._session = None

        if was_connected:
            await self._fire(self._on_disconnected, 1000)

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    async def _run(self):
        """Connection loop with automatic reconnection."""
        reconnect_delay = self.config.reconnect_delay

        while self._running:
            close_code = ABNORMAL_CLOSURE
            connected = False
            try:
                async with websockets.connect(
                    self.config.url,
                    ping_interval=self.config.ping_interval,
                    ping_timeout=60,
                    close_timeout=10
                ) as ws:
                    self._ws = ws
                    connected = True
                    reconnect_delay = self.config.reconnect_delay  # Reset on success
                    self._logger.info(f"Connected to rippled: {self.config.url}")

                    reader = asyncio.create_task(self._read_loop(ws))
                    try:
                        await self._request({"command": "subscribe", "streams": ["ledger"]}, use_rpc=False)
                        if not self._first_connect.done():
                            self._first_connect.set_result(True)
                        await self._fire(self._on_connected)
                        await reader
                    finally:
                        if not reader.done():
                            reader.cancel()
                    close_code = ws.close_code or ABNORMAL_CLOSURE

            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self._first_connect.done():
                    self._first_connect.set_exception(
                        LedgerConnectionError(f"Failed to connect to {self.config.url}: {e}")
                    )
                    self._running = False
                    return
                self._logger.warning(f"rippled connection error: {e}")
            finally:
                self._ws = None
                self._fail_pending(LedgerConnectionError("Connection to rippled lost"))

            # disconnect() reports its own close
            if connected and self._running:
                await self._fire(self._on_disconnected, close_code)

            if self._running:
                self._logger.info(f"Reconnecting in {reconnect_delay}s")
                await asyncio.sleep(reconnect_delay)
                reconnect_delay = min(reconnect_delay * 2, self.config.max_reconnect_delay)

    async def _read_loop(self, ws):
        try:
            async for message in ws:
                await self._handle_message(message)
        except websockets.ConnectionClosed as e:
            self._logger.warning(f"rippled socket closed: {e}")

    async def _handle_message(self, message: str):
        """Parse and route incoming WebSocket message."""
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            self._logger.warning(f"Invalid JSON: {message[:100]}")
            return

        msg_type = data.get('type')

        if msg_type == 'response':
            future = self._pending.pop(data.get('id'), None)
            if future is not None and not future.done():
                future.set_result(data)
        elif msg_type == 'ledgerClosed':
            try:
                ledger = parse_ledger_closed(data)
            except (KeyError, ValueError) as e:
                self._logger.warning(f"Bad ledgerClosed message: {e}")
                return
            await self._fire(self._on_ledger, ledger)
        elif data.get('status') == 'error' or 'error' in data:
            await self._fire(
                self._on_error,
                data.get('error', 'unknown'),
                data.get('error_message', ''),
                data
            )
        else:
            self._logger.debug(f"Ignoring message type {msg_type}")

    def _fail_pending(self, error: Exception):
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def _fire(self, callback: Optional[Callable], *args):
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._logger.error(f"Error in client callback: {e}", exc_info=True)

    # =========================================================================
    # Requests
    # =========================================================================

    async def _request(self, command: Dict[str, Any], use_rpc: bool = True) -> Dict[str, Any]:
        """
        Send a command and return its result.

        Raises:
            LedgerConnectionError: not connected, timed out, or transport failure
            QueryError: rippled returned an error response
        """
        if use_rpc and self._session is not None:
            return await self._request_rpc(command)

        ws = self._ws
        if ws is None:
            raise LedgerConnectionError("Not connected to rippled")

        request_id = next(self._request_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await ws.send(json.dumps({**command, "id": request_id}))
            response = await asyncio.wait_for(future, timeout=self.config.request_timeout)
        except asyncio.TimeoutError:
            raise LedgerConnectionError(f"{command['command']} timed out")
        except websockets.ConnectionClosed as e:
            raise LedgerConnectionError(f"{command['command']} failed: {e}")
        finally:
            self._pending.pop(request_id, None)

        if response.get('status') != 'success':
            raise QueryError(
                f"{command['command']}: {response.get('error')} {response.get('error_message', '')}".strip(),
                data=response
            )
        return response.get('result', {})

    async def _request_rpc(self, command: Dict[str, Any]) -> Dict[str, Any]:
        """Send a command over JSON-RPC."""
        params = {k: v for k, v in command.items() if k != 'command'}
        payload = {"method": command['command'], "params": [params]}

        try:
            async with self._session.post(
                self.config.rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"}
            ) as response:
                if response.status != 200:
                    raise QueryError(
                        f"{command['command']} HTTP {response.status}",
                        data={"status": response.status}
                    )
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise LedgerConnectionError(f"{command['command']} failed: {e}")

        result = data.get('result', {})
        if result.get('status') == 'error':
            raise QueryError(
                f"{command['command']}: {result.get('error')} {result.get('error_message', '')}".strip(),
                data=result
            )
        return result

    async def get_server_info(self) -> ServerInfo:
        """
        API: {"command": "server_info"}
        """
        result = await self._request({"command": "server_info"})
        return parse_server_info(result)

    async def get_transactions(
        self,
        address: str,
        min_ledger_version: int,
        max_ledger_version: int,
        earliest_first: bool = True,
        exclude_failures: bool = False
    ) -> List[Transaction]:
        """
        All transactions affecting address in [min, max].

        API: {"command": "account_tx", "account": ..., "ledger_index_min": ...,
              "ledger_index_max": ..., "forward": ..., "limit": ..., "marker": ...}

        Raises:
            QueryError: any page failed; partial results are discarded
        """
        command = {
            "command": "account_tx",
            "account": address,
            "ledger_index_min": min_ledger_version,
            "ledger_index_max": max_ledger_version,
            "forward": earliest_first,
            "binary": False,
            "limit": self.config.page_limit,
        }

        transactions = []
        marker = None
        try:
            while True:
                if marker is not None:
                    command["marker"] = marker
                result = await self._request(command)

                for entry in result.get('transactions', []):
                    transactions.append(parse_account_tx_entry(entry))

                marker = result.get('marker')
                if marker is None:
                    break
        except QueryError as e:
            e.address = address
            e.min_ledger_version = min_ledger_version
            e.max_ledger_version = max_ledger_version
            raise
        except (LedgerConnectionError, ValueError, KeyError) as e:
            raise QueryError(
                f"account_tx failed for {address} [{min_ledger_version}, {max_ledger_version}]: {e}",
                address=address,
                min_ledger_version=min_ledger_version,
                max_ledger_version=max_ledger_version,
                data={"exception": repr(e)}
            )

        if exclude_failures:
            transactions = [tx for tx in transactions if tx.succeeded]
        return transactions

    # =========================================================================
    # Callbacks
    # =========================================================================

    def set_connected_callback(self, callback: Callable):
        self._on_connected = callback

    def set_disconnected_callback(self, callback: Callable):
        self._on_disconnected = callback

    def set_error_callback(self, callback: Callable):
        self._on_error = callback

    def set_ledger_callback(self, callback: Callable):
        self._on_ledger = callback
