"""
SQLite database shared by the channel and recording stores.

One aiosqlite connection per process, shared by request handlers and the
scheduler. Transactions and reads are serialized with an asyncio lock.
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

from .logger import get_logger


SCHEMA = """
CREATE TABLE IF NOT EXISTS recordings (
    recording_id TEXT PRIMARY KEY,
    channel_id TEXT NOT NULL,
    title TEXT NOT NULL,
    duration_seconds INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    thumbnail_url TEXT NOT NULL,
    fetched_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS recordings_channel_created_idx
    ON recordings(channel_id, created_at);
CREATE INDEX IF NOT EXISTS recordings_fetched_at_idx
    ON recordings(fetched_at);

CREATE TABLE IF NOT EXISTS followed_channels (
    channel_id TEXT PRIMARY KEY,
    channel_name TEXT NOT NULL,
    profile_image_url TEXT NOT NULL DEFAULT '',
    is_live INTEGER NOT NULL DEFAULT 0,
    is_favorite INTEGER NOT NULL DEFAULT 0,
    sort_order INTEGER NOT NULL DEFAULT 0,
    last_seen_at TEXT,
    latest_recording_id TEXT
        REFERENCES recordings(recording_id) ON DELETE SET NULL,
    followed_at TEXT,
    fetched_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS followed_channels_channel_name_idx
    ON followed_channels(channel_name);
CREATE INDEX IF NOT EXISTS followed_channels_favorite_sort_idx
    ON followed_channels(is_favorite, sort_order);
CREATE INDEX IF NOT EXISTS followed_channels_is_live_idx
    ON followed_channels(is_live);
CREATE INDEX IF NOT EXISTS followed_channels_latest_recording_idx
    ON followed_channels(latest_recording_id);
"""


class Database:
    """Owns the aiosqlite connection and hands out transactions."""

    def __init__(self, path: str = "./data/livesync.db"):
        """
        Args:
            path: SQLite file path, or ':memory:'.
        """
        self.path = path
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._logger = get_logger('database')

    async def connect(self) -> None:
        """Open the connection and create tables."""
        if self._conn is not None:
            return

        if self.path != ':memory:':
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode; transactions are opened explicitly below
        self._conn = await aiosqlite.connect(self.path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("PRAGMA foreign_keys = ON")
        await self._conn.execute("PRAGMA journal_mode = WAL")
        await self._conn.executescript(SCHEMA)

        self._logger.info(f"Database ready: {self.path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first")
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run statements in one IMMEDIATE transaction.

        Commits on normal exit and rolls back on any exception, which is
        re-raised for the calling store to turn into a StoreError.
        """
        async with self._lock:
            conn = self.conn
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        """Borrow the connection for reads, outside any open transaction."""
        async with self._lock:
            yield self.conn
