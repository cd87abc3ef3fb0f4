"""
SQLite blob store for favicon and thumbnail attachments.

Attachments never leave the device: they are too large for the synced
metadata store and are not portable between browsers anyway. The
database is opened lazily on first use; concurrent first calls share
the same pending open.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import aiosqlite

from ..exceptions import MalformedRecordError, StorageConnectionError, StorageIOError
from ..models import ItemAttachments
from .base import BlobRecord, BlobStore

if TYPE_CHECKING:
    from ..config import SetAsideConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_meta (
    key TEXT PRIMARY KEY,
    value TEXT
);
CREATE TABLE IF NOT EXISTS blob_records (
    collection_id TEXT NOT NULL PRIMARY KEY,
    stored_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS item_attachments (
    collection_id TEXT NOT NULL
        REFERENCES blob_records(collection_id) ON DELETE CASCADE,
    item_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    favicon BLOB,
    thumbnail BLOB,
    PRIMARY KEY (collection_id, item_id)
);
"""


def _as_bytes(key: str, value: Any) -> bytes | None:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise MalformedRecordError(key, f"attachment of type {type(value).__name__}")


class SQLiteBlobStore(BlobStore):
    """Versioned SQLite store keyed by collection ID.

    Each record maps item IDs to their attachments. Records are stored
    as one row per collection plus one row per item, so deleting a
    collection's record removes its attachments in the same statement.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        """Initialize the store without opening the database.

        Args:
            db_path: SQLite database file, or ":memory:"
        """
        self.db_path = str(db_path)
        self._opening: asyncio.Future[aiosqlite.Connection] | None = None
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: SetAsideConfig) -> SQLiteBlobStore:
        """Create a store from configuration."""
        return cls(config.blob_db_path)

    async def _open(self) -> aiosqlite.Connection:
        try:
            conn = await aiosqlite.connect(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise StorageConnectionError(self.db_path, e) from e

        try:
            await conn.execute("PRAGMA foreign_keys = ON")
            await conn.executescript(_CREATE_TABLES_SQL)
            version = await self._get_schema_version(conn)
            if version > SCHEMA_VERSION:
                raise StorageConnectionError(
                    self.db_path,
                    RuntimeError(f"schema version {version} is newer than {SCHEMA_VERSION}"),
                )
            if version < SCHEMA_VERSION:
                await conn.execute(
                    "INSERT OR REPLACE INTO schema_meta (key, value) VALUES ('version', ?)",
                    (str(SCHEMA_VERSION),),
                )
            await conn.commit()
        except StorageConnectionError:
            await conn.close()
            raise
        except sqlite3.Error as e:
            await conn.close()
            raise StorageConnectionError(self.db_path, e) from e

        logger.info(f"Blob store opened: {self.db_path}")
        return conn

    @staticmethod
    async def _get_schema_version(conn: aiosqlite.Connection) -> int:
        async with conn.execute("SELECT value FROM schema_meta WHERE key = 'version'") as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def _connection(self) -> aiosqlite.Connection:
        """Return the open connection, opening it on first use."""
        if self._opening is None:
            self._opening = asyncio.ensure_future(self._open())
        return await asyncio.shield(self._opening)

    async def _run(
        self,
        operation: str,
        key: str | None,
        action: Callable[[aiosqlite.Connection], Awaitable[T]],
    ) -> T:
        try:
            conn = await self._connection()
            return await action(conn)
        except StorageConnectionError as e:
            raise StorageIOError(operation, key, e) from e
        except sqlite3.Error as e:
            raise StorageIOError(operation, key, e) from e

    async def get(self, key: str) -> BlobRecord | None:
        async def action(conn: aiosqlite.Connection) -> BlobRecord | None:
            async with conn.execute(
                "SELECT 1 FROM blob_records WHERE collection_id = ?", (key,)
            ) as cursor:
                if await cursor.fetchone() is None:
                    return None
            async with conn.execute(
                "SELECT item_id, favicon, thumbnail FROM item_attachments "
                "WHERE collection_id = ? ORDER BY position",
                (key,),
            ) as cursor:
                rows = await cursor.fetchall()
            return {
                item_id: ItemAttachments(_as_bytes(key, favicon), _as_bytes(key, thumbnail))
                for item_id, favicon, thumbnail in rows
            }

        return await self._run("get", key, action)

    async def get_all(self) -> dict[str, BlobRecord]:
        async def action(conn: aiosqlite.Connection) -> dict[str, BlobRecord]:
            records: dict[str, BlobRecord] = {}
            async with conn.execute("SELECT collection_id FROM blob_records") as cursor:
                for (collection_id,) in await cursor.fetchall():
                    records[collection_id] = {}
            async with conn.execute(
                "SELECT collection_id, item_id, favicon, thumbnail FROM item_attachments "
                "ORDER BY collection_id, position"
            ) as cursor:
                for collection_id, item_id, favicon, thumbnail in await cursor.fetchall():
                    records.setdefault(collection_id, {})[item_id] = ItemAttachments(
                        _as_bytes(collection_id, favicon), _as_bytes(collection_id, thumbnail)
                    )
            return records

        return await self._run("get_all", None, action)

    async def keys(self) -> list[str]:
        async def action(conn: aiosqlite.Connection) -> list[str]:
            async with conn.execute("SELECT collection_id FROM blob_records") as cursor:
                return [row[0] for row in await cursor.fetchall()]

        return await self._run("keys", None, action)

    async def set(self, key: str, value: BlobRecord) -> None:
        rows = [
            (key, item_id, position, attachments.favicon, attachments.thumbnail)
            for position, (item_id, attachments) in enumerate(value.items())
        ]

        async def action(conn: aiosqlite.Connection) -> None:
            async with self._write_lock:
                try:
                    await conn.execute("DELETE FROM blob_records WHERE collection_id = ?", (key,))
                    await conn.execute(
                        "INSERT INTO blob_records (collection_id, stored_at) VALUES (?, ?)",
                        (key, datetime.now(UTC).isoformat()),
                    )
                    await conn.executemany(
                        "INSERT INTO item_attachments "
                        "(collection_id, item_id, position, favicon, thumbnail) "
                        "VALUES (?, ?, ?, ?, ?)",
                        rows,
                    )
                    await conn.commit()
                except sqlite3.Error:
                    await conn.rollback()
                    raise

        await self._run("set", key, action)

    async def delete(self, key: str) -> None:
        async def action(conn: aiosqlite.Connection) -> None:
            async with self._write_lock:
                await conn.execute("DELETE FROM blob_records WHERE collection_id = ?", (key,))
                await conn.commit()

        await self._run("delete", key, action)

    async def clear(self) -> None:
        async def action(conn: aiosqlite.Connection) -> None:
            async with self._write_lock:
                await conn.execute("DELETE FROM blob_records")
                await conn.commit()

        await self._run("clear", None, action)

    async def close(self) -> None:
        """Close the database if it was opened."""
        if self._opening is None:
            return
        opening, self._opening = self._opening, None
        try:
            conn = await opening
        except StorageConnectionError:
            return
        await conn.close()
