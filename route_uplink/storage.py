"""
Disk-backed key/value store using SQLite for process-death resilience.

Every write is committed before the call returns, so a value that has been
set survives a crash or restart. All failures surface as PersistenceError.
"""
import asyncio
import sqlite3
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import aiosqlite
import structlog

from route_uplink.errors import PersistenceError

logger = structlog.get_logger(__name__)


class SQLiteKeyValueStore:
    """
    String key/value store over a single SQLite table.

    The connection is opened lazily on first use so the store can be built
    outside a running event loop.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self):
        """Open the database and create the table if needed."""
        if self._db is not None:
            return

        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(self.db_path)
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)
            await db.commit()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError("open", self.db_path, e) from e

        self._db = db
        logger.debug("kv store opened", db_path=self.db_path)

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db

    async def get_item(self, key: str) -> Optional[str]:
        values = await self.multi_get([key])
        return values[key]

    async def multi_get(self, keys: Iterable[str]) -> Dict[str, Optional[str]]:
        """Fetch several keys at once; missing keys map to None."""
        keys = list(keys)
        async with self._lock:
            db = await self._conn()
            try:
                placeholders = ",".join("?" * len(keys))
                cursor = await db.execute(
                    f"SELECT key, value FROM kv_store WHERE key IN ({placeholders})",
                    keys,
                )
                rows = await cursor.fetchall()
            except sqlite3.Error as e:
                raise PersistenceError("read", ",".join(keys), e) from e

        found = {row[0]: row[1] for row in rows}
        return {key: found.get(key) for key in keys}

    async def set_item(self, key: str, value: str):
        await self.multi_set([(key, value)])

    async def multi_set(self, pairs: List[Tuple[str, str]]):
        """Write several keys in one transaction."""
        if not pairs:
            return
        async with self._lock:
            db = await self._conn()
            try:
                await db.executemany(
                    "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                    pairs,
                )
                await db.commit()
            except sqlite3.Error as e:
                raise PersistenceError("write", ",".join(k for k, _ in pairs), e) from e

    async def remove_item(self, key: str):
        await self.multi_remove([key])

    async def multi_remove(self, keys: Iterable[str]):
        keys = list(keys)
        if not keys:
            return
        async with self._lock:
            db = await self._conn()
            try:
                placeholders = ",".join("?" * len(keys))
                await db.execute(f"DELETE FROM kv_store WHERE key IN ({placeholders})", keys)
                await db.commit()
            except sqlite3.Error as e:
                raise PersistenceError("delete", ",".join(keys), e) from e

    async def close(self):
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
