"""Primary/fallback storage composition."""

import logging
from datetime import datetime, timezone
from typing import Any

from budgetapp.storage.base import StorageError, StorageProvider, StorageStats

logger = logging.getLogger(__name__)


async def _both(providers: tuple[StorageProvider, ...], op: str, *args: Any) -> None:
    """Run op on every provider in turn; raise the first error after all have run."""
    errors: list[StorageError] = []
    for provider in providers:
        try:
            await getattr(provider, op)(*args)
        except StorageError as e:
            errors.append(e)
    if errors:
        raise errors[0]


class CompositeStorage(StorageProvider):
    """Writes go to primary and are mirrored to fallback; reads fall back and repair primary."""

    provider_type = "composite"

    def __init__(self, primary: StorageProvider, fallback: StorageProvider) -> None:
        self.primary = primary
        self.fallback = fallback

    async def save(self, key: str, value: bytes, ttl: float | None = None) -> None:
        try:
            await self.primary.save(key, value, ttl)
        except StorageError as e:
            logger.warning("CompositeStorage: primary save failed for %s: %s", key, e)
            await self.fallback.save(key, value, ttl)
            return
        try:
            await self.fallback.save(key, value, ttl)
        except StorageError as e:
            logger.warning("CompositeStorage: fallback mirror failed for %s: %s", key, e)

    async def load(self, key: str) -> bytes:
        try:
            return await self.primary.load(key)
        except StorageError:
            pass
        value = await self.fallback.load(key)
        try:
            await self.primary.save(key, value)
        except StorageError as e:
            logger.warning("CompositeStorage: could not restore %s into primary: %s", key, e)
        return value

    async def delete(self, key: str) -> None:
        await _both((self.primary, self.fallback), "delete", key)

    async def exists(self, key: str) -> bool:
        try:
            if await self.primary.exists(key):
                return True
        except StorageError:
            pass
        return await self.fallback.exists(key)

    async def get_ttl(self, key: str) -> float:
        try:
            return await self.primary.get_ttl(key)
        except StorageError:
            return await self.fallback.get_ttl(key)

    async def set_ttl(self, key: str, ttl: float) -> None:
        await _both((self.primary, self.fallback), "set_ttl", key, ttl)

    async def clear(self) -> None:
        await _both((self.primary, self.fallback), "clear")

    async def get_stats(self) -> StorageStats:
        p = await self.primary.get_stats()
        f = await self.fallback.get_stats()
        return StorageStats(
            total_keys=p.total_keys + f.total_keys,
            total_size=p.total_size + f.total_size,
            expired_keys=p.expired_keys + f.expired_keys,
            last_cleanup=datetime.now(timezone.utc),
            provider_type=self.provider_type,
        )

    async def close(self) -> None:
        await _both((self.primary, self.fallback), "close")
