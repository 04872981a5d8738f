"""In-process storage provider with lazy TTL expiry."""

import asyncio
import time
from datetime import datetime, timezone

from budgetapp.storage.base import KeyNotFoundError, NoTTLError, StorageProvider, StorageStats


class MemoryStorage(StorageProvider):
    """Dict-backed provider. Expired keys are dropped on access or by cleanup_expired()."""

    provider_type = "memory"

    def __init__(self, default_ttl: float | None = None) -> None:
        self._default_ttl = default_ttl
        # key -> (value, expires_at monotonic or None)
        self._entries: dict[str, tuple[bytes, float | None]] = {}
        self._lock = asyncio.Lock()
        self._expired_count = 0
        self._last_cleanup: datetime | None = None

    def _live(self, key: str) -> tuple[bytes, float | None] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= time.monotonic():
            del self._entries[key]
            self._expired_count += 1
            return None
        return entry

    async def save(self, key: str, value: bytes, ttl: float | None = None) -> None:
        ttl = ttl if ttl is not None else self._default_ttl
        expires_at = time.monotonic() + ttl if ttl is not None else None
        async with self._lock:
            self._entries[key] = (bytes(value), expires_at)

    async def load(self, key: str) -> bytes:
        async with self._lock:
            entry = self._live(key)
        if entry is None:
            raise KeyNotFoundError("load", key)
        return entry[0]

    async def delete(self, key: str) -> None:
        async with self._lock:
            if self._live(key) is None:
                raise KeyNotFoundError("delete", key)
            del self._entries[key]

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live(key) is not None

    async def get_ttl(self, key: str) -> float:
        async with self._lock:
            entry = self._live(key)
        if entry is None:
            raise KeyNotFoundError("get_ttl", key)
        if entry[1] is None:
            raise NoTTLError("get_ttl", key)
        return max(entry[1] - time.monotonic(), 0.0)

    async def set_ttl(self, key: str, ttl: float) -> None:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                raise KeyNotFoundError("set_ttl", key)
            self._entries[key] = (entry[0], time.monotonic() + ttl)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def cleanup_expired(self) -> int:
        """Drop all expired keys. Returns how many were removed."""
        async with self._lock:
            before = self._expired_count
            for key in list(self._entries):
                self._live(key)
            self._last_cleanup = datetime.now(timezone.utc)
            return self._expired_count - before

    async def get_stats(self) -> StorageStats:
        async with self._lock:
            keys = [k for k in list(self._entries) if self._live(k) is not None]
            size = sum(len(self._entries[k][0]) for k in keys)
            return StorageStats(
                total_keys=len(keys),
                total_size=size,
                expired_keys=self._expired_count,
                last_cleanup=self._last_cleanup,
                provider_type=self.provider_type,
            )

    async def close(self) -> None:
        async with self._lock:
            self._entries.clear()
