"""Pluggable key-value storage providers used for event persistence and handler records."""

from budgetapp.storage.base import (
    KeyNotFoundError,
    NoTTLError,
    StorageError,
    StorageOptions,
    StorageProvider,
    StorageStats,
)
from budgetapp.storage.composite import CompositeStorage
from budgetapp.storage.manager import StorageManager
from budgetapp.storage.memory import MemoryStorage
from budgetapp.storage.sqlite import SQLiteStorage

__all__ = [
    "CompositeStorage",
    "KeyNotFoundError",
    "MemoryStorage",
    "NoTTLError",
    "SQLiteStorage",
    "StorageError",
    "StorageManager",
    "StorageOptions",
    "StorageProvider",
    "StorageStats",
]
