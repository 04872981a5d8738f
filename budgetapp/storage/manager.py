"""Named storage providers created from registered factories."""

import logging
from pathlib import Path
from typing import Protocol

from budgetapp.storage.base import StorageError, StorageOptions, StorageProvider, StorageStats
from budgetapp.storage.memory import MemoryStorage
from budgetapp.storage.sqlite import SQLiteStorage

logger = logging.getLogger(__name__)


class StorageFactory(Protocol):
    provider_type: str

    def create(self, options: StorageOptions) -> StorageProvider: ...


class MemoryStorageFactory:
    provider_type = "memory"

    def create(self, options: StorageOptions) -> StorageProvider:
        return MemoryStorage(default_ttl=options.default_ttl)


class SQLiteStorageFactory:
    provider_type = "sqlite"

    def create(self, options: StorageOptions) -> StorageProvider:
        if not options.db_path:
            raise StorageError("create", "sqlite", "sqlite provider requires db_path", "INVALID_OPTIONS")
        return SQLiteStorage(
            Path(options.db_path),
            busy_timeout=options.busy_timeout,
            default_ttl=options.default_ttl,
        )


class StorageManager:
    """Registry of storage factories and the providers built from them."""

    def __init__(self, register_builtin: bool = True) -> None:
        self._factories: dict[str, StorageFactory] = {}
        self._providers: dict[str, StorageProvider] = {}
        self._options: dict[str, StorageOptions] = {}
        if register_builtin:
            self.register_factory("memory", MemoryStorageFactory())
            self.register_factory("sqlite", SQLiteStorageFactory())

    def register_factory(self, name: str, factory: StorageFactory) -> None:
        self._factories[name] = factory

    def create_provider(
        self, name: str, factory_name: str, options: StorageOptions | None = None
    ) -> StorageProvider:
        factory = self._factories.get(factory_name)
        if factory is None:
            raise StorageError(
                "create_provider", name, f"factory not found: {factory_name}", "FACTORY_NOT_FOUND"
            )
        options = options or StorageOptions()
        provider = factory.create(options)
        self._providers[name] = provider
        self._options[name] = options
        logger.debug("StorageManager: created %s provider %r", factory_name, name)
        return provider

    def get_provider(self, name: str) -> StorageProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise StorageError("get_provider", name, f"provider not found: {name}", "PROVIDER_NOT_FOUND")
        return provider

    def list_providers(self) -> list[str]:
        return list(self._providers)

    async def remove_provider(self, name: str) -> None:
        provider = self.get_provider(name)
        await provider.close()
        del self._providers[name]
        self._options.pop(name, None)

    async def close_all(self) -> None:
        """Close every provider. Raises the last close error after trying all."""
        last_error: StorageError | None = None
        for name, provider in list(self._providers.items()):
            try:
                await provider.close()
            except StorageError as e:
                logger.warning("StorageManager: close failed for %s: %s", name, e)
                last_error = e
            del self._providers[name]
        self._options.clear()
        if last_error is not None:
            raise last_error

    async def get_stats(self) -> dict[str, StorageStats]:
        return {name: await p.get_stats() for name, p in self._providers.items()}
