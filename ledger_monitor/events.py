"""
Event Bus

Explicit publish/subscribe channel for monitor events.

Event kinds and callback signatures:
- CONNECTED(server_info)
- DISCONNECTED(code)
- ERROR(code, message, data)
- LEDGER(ledger_info)
- LEDGER_COMPLETE(ledger_version)
- ADDRESS_ACTIVITY(transaction, affected_address), scoped to one address

Callbacks may be plain functions or coroutine functions. A failing callback
is logged and does not prevent delivery to the remaining subscribers.
"""

import inspect
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple


class EventKind(Enum):
    """Events published by the monitor."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    LEDGER = "ledger"
    LEDGER_COMPLETE = "ledger_complete"
    ADDRESS_ACTIVITY = "address_activity"


class EventBus:
    """
    Subscriber registry keyed by (event kind, address).

    Usage:
        bus = EventBus()
        bus.subscribe(EventKind.LEDGER_COMPLETE, on_complete)
        bus.subscribe(EventKind.ADDRESS_ACTIVITY, on_tx, address="rXYZ...")
        await bus.publish(EventKind.LEDGER_COMPLETE, 1234)
    """

    def __init__(self):
        self._logger = logging.getLogger("EventBus")
        self._subscribers: Dict[Tuple[EventKind, Optional[str]], List[Callable]] = {}

    def subscribe(
        self,
        kind: EventKind,
        callback: Callable,
        address: Optional[str] = None
    ):
        """Register a callback. ADDRESS_ACTIVITY subscriptions require an address."""
        if kind == EventKind.ADDRESS_ACTIVITY and not address:
            raise ValueError("ADDRESS_ACTIVITY subscriptions need an address")
        if kind != EventKind.ADDRESS_ACTIVITY and address is not None:
            raise ValueError(f"{kind.value} events are not address scoped")

        self._subscribers.setdefault((kind, address), []).append(callback)

    def unsubscribe(
        self,
        kind: EventKind,
        callback: Callable,
        address: Optional[str] = None
    ) -> bool:
        """Remove a callback. Returns False if it was not registered."""
        callbacks = self._subscribers.get((kind, address), [])
        if callback not in callbacks:
            return False
        callbacks.remove(callback)
        return True

    def subscriber_count(self, kind: EventKind, address: Optional[str] = None) -> int:
        return len(self._subscribers.get((kind, address), []))

    async def publish(self, kind: EventKind, *args, address: Optional[str] = None) -> int:
        """
        Deliver an event to its subscribers.

        Returns:
            Number of callbacks that completed without raising
        """
        delivered = 0
        for callback in list(self._subscribers.get((kind, address), [])):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                self._logger.error(f"Error in {kind.value} callback: {e}", exc_info=True)
        return delivered
