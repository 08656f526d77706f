"""Durability gate implementations for delivered transactions."""

from .delivery_store import (
    DeliveryStore,
    MemoryDeliveryStore,
    SqliteDeliveryStore,
    TransactionFileStore,
)

__all__ = [
    "DeliveryStore",
    "MemoryDeliveryStore",
    "SqliteDeliveryStore",
    "TransactionFileStore",
]
