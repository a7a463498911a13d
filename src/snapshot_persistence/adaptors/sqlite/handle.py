"""
This module provides the SQLite-specific implementation of the `KeyValueStore`
protocol. Each store owns one table of `(key, value)` rows; several stores can
share a connection as long as they share its write lock.
The use of `SAVEPOINT` keeps every write atomic on the shared connection.
"""
import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import List

import aiosqlite

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SQLiteKeyValueStore:
    """
    A concrete implementation of the `KeyValueStore` protocol for SQLite.

    This class encapsulates all SQL required to persist application state,
    snapshot blobs, the catalog and the service configuration.
    """

    def __init__(
        self,
        conn: aiosqlite.Connection,
        table: str = "kv_store",
        write_lock: asyncio.Lock | None = None,
    ):
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self.conn = conn
        self.table = table
        self.write_lock = write_lock or asyncio.Lock()

    async def create_schema(self):
        await self.conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        await self.conn.commit()

    async def get(self, key: str) -> str | None:
        async with self.conn.execute(
            f"SELECT value FROM {self.table} WHERE key = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else None

    async def set(self, key: str, value: str):
        await self._write(
            f"""
            INSERT INTO {self.table} (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, value, datetime.now(timezone.utc).isoformat()),
        )

    async def delete(self, key: str) -> bool:
        return await self._write(f"DELETE FROM {self.table} WHERE key = ?", (key,)) > 0

    async def keys(self, prefix: str = "") -> List[str]:
        async with self.conn.execute(
            f"SELECT key FROM {self.table} WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        ) as cursor:
            return [row[0] async for row in cursor]

    async def _write(self, sql: str, params: tuple) -> int:
        async with self.write_lock:
            try:
                await self.conn.execute("SAVEPOINT kv_write")
                cursor = await self.conn.execute(sql, params)
                rowcount = cursor.rowcount
                await cursor.close()
                await self.conn.execute("RELEASE SAVEPOINT kv_write")
                await self.conn.commit()
                return rowcount
            except Exception as e:
                await self.conn.execute("ROLLBACK TO SAVEPOINT kv_write")
                await self.conn.execute("RELEASE SAVEPOINT kv_write")
                logging.error(f"Failed to write to SQLite table {self.table}: {e}")
                raise
