"""SQLite storage provider (aiosqlite). One connection per instance.

Every operation reports failures of the database or its file (aiosqlite.Error,
OSError) as StorageError, so a CompositeStorage can fall back on them.
"""

import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import aiosqlite

from budgetapp.storage.base import (
    KeyNotFoundError,
    NoTTLError,
    StorageError,
    StorageProvider,
    StorageStats,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS storage_entries (
    key         TEXT    PRIMARY KEY,
    value       BLOB    NOT NULL,
    created_at  REAL    NOT NULL,
    expires_at  REAL,
    size_bytes  INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_se_expires ON storage_entries(expires_at);
"""

# Rows with expires_at in the past are treated as absent
_LIVE = "(expires_at IS NULL OR expires_at > ?)"


@contextmanager
def _sqlite_errors(op: str, key: str) -> Iterator[None]:
    try:
        yield
    except (aiosqlite.Error, OSError) as e:
        raise StorageError(op, key, f"sqlite {op} failed: {e}") from e


class SQLiteStorage(StorageProvider):
    """SQLite-backed key-value store with per-key expiry."""

    provider_type = "sqlite"

    def __init__(
        self,
        db_path: Path,
        busy_timeout: int = 5000,
        default_ttl: float | None = None,
    ) -> None:
        self._db_path = Path(db_path)
        self._busy_timeout = busy_timeout
        self._default_ttl = default_ttl
        self._conn: aiosqlite.Connection | None = None
        self._expired_count = 0
        self._last_cleanup: datetime | None = None

    async def _ensure_conn(self, op: str, key: str) -> aiosqlite.Connection:
        if self._conn is not None:
            return self._conn
        conn: aiosqlite.Connection | None = None
        with _sqlite_errors(op, key):
            try:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = await aiosqlite.connect(str(self._db_path))
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.execute("PRAGMA synchronous=NORMAL")
                await conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
                await conn.executescript(_SCHEMA)
                await conn.commit()
            except BaseException:
                # Half-open connection: drop it so the next call retries from scratch
                if conn is not None:
                    await conn.close()
                raise
        self._conn = conn
        return conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            conn, self._conn = self._conn, None
            with _sqlite_errors("close", ""):
                await conn.close()

    async def save(self, key: str, value: bytes, ttl: float | None = None) -> None:
        conn = await self._ensure_conn("save", key)
        now = time.time()
        ttl = ttl if ttl is not None else self._default_ttl
        expires_at = now + ttl if ttl is not None else None
        with _sqlite_errors("save", key):
            await conn.execute(
                """
                INSERT INTO storage_entries (key, value, created_at, expires_at, size_bytes)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at,
                    size_bytes = excluded.size_bytes
                """,
                (key, bytes(value), now, expires_at, len(value)),
            )
            await conn.commit()

    async def _fetch_live(self, op: str, key: str) -> tuple[bytes, float | None] | None:
        conn = await self._ensure_conn(op, key)
        with _sqlite_errors(op, key):
            cursor = await conn.execute(
                f"SELECT value, expires_at FROM storage_entries WHERE key = ? AND {_LIVE}",
                (key, time.time()),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return (bytes(row[0]), row[1])

    async def load(self, key: str) -> bytes:
        row = await self._fetch_live("load", key)
        if row is None:
            raise KeyNotFoundError("load", key)
        return row[0]

    async def delete(self, key: str) -> None:
        conn = await self._ensure_conn("delete", key)
        with _sqlite_errors("delete", key):
            cursor = await conn.execute(
                f"DELETE FROM storage_entries WHERE key = ? AND {_LIVE}",
                (key, time.time()),
            )
            await conn.commit()
        if not cursor.rowcount:
            raise KeyNotFoundError("delete", key)

    async def exists(self, key: str) -> bool:
        return await self._fetch_live("exists", key) is not None

    async def get_ttl(self, key: str) -> float:
        row = await self._fetch_live("get_ttl", key)
        if row is None:
            raise KeyNotFoundError("get_ttl", key)
        if row[1] is None:
            raise NoTTLError("get_ttl", key)
        return max(row[1] - time.time(), 0.0)

    async def set_ttl(self, key: str, ttl: float) -> None:
        conn = await self._ensure_conn("set_ttl", key)
        now = time.time()
        with _sqlite_errors("set_ttl", key):
            cursor = await conn.execute(
                f"UPDATE storage_entries SET expires_at = ? WHERE key = ? AND {_LIVE}",
                (now + ttl, key, now),
            )
            await conn.commit()
        if not cursor.rowcount:
            raise KeyNotFoundError("set_ttl", key)

    async def clear(self) -> None:
        conn = await self._ensure_conn("clear", "")
        with _sqlite_errors("clear", ""):
            await conn.execute("DELETE FROM storage_entries")
            await conn.commit()

    async def cleanup_expired(self) -> int:
        """Delete expired rows. Returns count."""
        conn = await self._ensure_conn("cleanup", "")
        with _sqlite_errors("cleanup", ""):
            cursor = await conn.execute(
                "DELETE FROM storage_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (time.time(),),
            )
            await conn.commit()
        removed = cursor.rowcount or 0
        self._expired_count += removed
        self._last_cleanup = datetime.now(timezone.utc)
        if removed:
            logger.debug("SQLiteStorage: purged %d expired entries", removed)
        return removed

    async def get_stats(self) -> StorageStats:
        conn = await self._ensure_conn("get_stats", "")
        with _sqlite_errors("get_stats", ""):
            cursor = await conn.execute(
                f"SELECT COUNT(*), COALESCE(SUM(size_bytes), 0) FROM storage_entries WHERE {_LIVE}",
                (time.time(),),
            )
            row = await cursor.fetchone() or (0, 0)
        return StorageStats(
            total_keys=row[0],
            total_size=row[1],
            expired_keys=self._expired_count,
            last_cleanup=self._last_cleanup,
            provider_type=self.provider_type,
        )
