"""Storage provider contract, errors and stats."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

__all__ = [
    "KeyNotFoundError",
    "NoTTLError",
    "StorageError",
    "StorageOptions",
    "StorageProvider",
    "StorageStats",
]


class StorageError(Exception):
    """Storage failure with the operation, key and a stable error code."""

    def __init__(self, op: str, key: str, message: str, code: str = "STORAGE_ERROR") -> None:
        super().__init__(message)
        self.op = op
        self.key = key
        self.message = message
        self.code = code


class KeyNotFoundError(StorageError, KeyError):
    def __init__(self, op: str, key: str) -> None:
        super().__init__(op, key, f"key not found: {key}", "NOT_FOUND")

    def __str__(self) -> str:
        return self.message


class NoTTLError(StorageError):
    def __init__(self, op: str, key: str) -> None:
        super().__init__(op, key, f"no TTL set: {key}", "NO_TTL")


@dataclass
class StorageStats:
    total_keys: int = 0
    total_size: int = 0
    expired_keys: int = 0
    last_cleanup: datetime | None = None
    provider_type: str = ""


@dataclass
class StorageOptions:
    """Options passed to provider factories."""

    default_ttl: float | None = None
    db_path: str | None = None
    busy_timeout: int = 5000
    metadata: dict[str, Any] = field(default_factory=dict)


class StorageProvider(ABC):
    """Async key-value store with optional per-key TTL (seconds)."""

    provider_type: str = "abstract"

    @abstractmethod
    async def save(self, key: str, value: bytes, ttl: float | None = None) -> None:
        """Store value under key, replacing any previous value."""

    @abstractmethod
    async def load(self, key: str) -> bytes:
        """Return stored value. Raises KeyNotFoundError if missing or expired."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key. Raises KeyNotFoundError if missing."""

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def get_ttl(self, key: str) -> float:
        """Remaining TTL in seconds. Raises NoTTLError if the key never expires."""

    @abstractmethod
    async def set_ttl(self, key: str, ttl: float) -> None: ...

    @abstractmethod
    async def clear(self) -> None: ...

    @abstractmethod
    async def get_stats(self) -> StorageStats: ...

    @abstractmethod
    async def close(self) -> None: ...
