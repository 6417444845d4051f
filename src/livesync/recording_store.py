"""
Recording store: cached VOD metadata keyed by Twitch video id.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import aiosqlite

from .database import Database
from .errors import StoreError
from .logger import get_logger
from .timeutil import now_timestamp
from .twitch_api import RecordingData


@dataclass
class Recording:
    """A cached recording row."""
    recording_id: str
    channel_id: str
    title: str
    duration_seconds: int
    created_at: str
    thumbnail_url: str
    fetched_at: str

    @classmethod
    def from_row(cls, row) -> 'Recording':
        return cls(
            recording_id=row['recording_id'],
            channel_id=row['channel_id'],
            title=row['title'],
            duration_seconds=row['duration_seconds'],
            created_at=row['created_at'],
            thumbnail_url=row['thumbnail_url'],
            fetched_at=row['fetched_at'],
        )


RECORDING_COLUMNS = (
    "recording_id, channel_id, title, duration_seconds, created_at, thumbnail_url, fetched_at"
)

# created_at is immutable once stored
UPSERT_SQL = f"""
INSERT INTO recordings ({RECORDING_COLUMNS})
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(recording_id) DO UPDATE SET
    title = excluded.title,
    duration_seconds = excluded.duration_seconds,
    thumbnail_url = excluded.thumbnail_url,
    fetched_at = excluded.fetched_at
"""

REFERENCED = "SELECT latest_recording_id FROM followed_channels WHERE latest_recording_id IS NOT NULL"


async def _prune(
    conn: aiosqlite.Connection,
    channel_id: str,
    older_than: Optional[str] = None,
    keep: Optional[int] = None
) -> int:
    """Delete a channel's recordings by age and/or rank, sparing referenced rows."""
    deleted = 0

    if older_than is not None:
        cursor = await conn.execute(
            f"""DELETE FROM recordings
                WHERE channel_id = ? AND created_at < ?
                  AND recording_id NOT IN ({REFERENCED})""",
            (channel_id, older_than)
        )
        deleted += cursor.rowcount

    if keep is not None:
        cursor = await conn.execute(
            f"""DELETE FROM recordings
                WHERE channel_id = ?
                  AND recording_id NOT IN ({REFERENCED})
                  AND recording_id NOT IN (
                      SELECT recording_id FROM recordings
                      WHERE channel_id = ?
                      ORDER BY created_at DESC, recording_id DESC
                      LIMIT ?
                  )""",
            (channel_id, channel_id, max(0, keep))
        )
        deleted += cursor.rowcount

    return deleted


class RecordingStore:
    """Reads and writes the recordings table."""

    def __init__(self, db: Database):
        self.db = db
        self._logger = get_logger('recording_store')

    async def apply_refresh(
        self,
        channel_id: str,
        recordings: Sequence[RecordingData],
        retention_cutoff: str
    ) -> Union[Optional[str], StoreError]:
        """
        Store freshly fetched recordings for a channel in one transaction.

        Upserts every row, points the channel's latest_recording_id at the
        first (newest) one, then prunes that channel's rows created before
        `retention_cutoff`. A row referenced by any channel pointer is never
        pruned.

        Returns:
            The new latest recording id, None when `recordings` is empty,
            or StoreError.
        """
        if not recordings:
            return None

        fetched_at = now_timestamp()
        latest_id = recordings[0].recording_id

        try:
            async with self.db.transaction() as conn:
                await conn.executemany(UPSERT_SQL, [
                    (r.recording_id, channel_id, r.title, r.duration_seconds,
                     r.created_at, r.thumbnail_url, fetched_at)
                    for r in recordings
                ])
                await conn.execute(
                    """UPDATE followed_channels
                       SET latest_recording_id = ?, updated_at = ?
                       WHERE channel_id = ? AND latest_recording_id IS NOT ?""",
                    (latest_id, fetched_at, channel_id, latest_id)
                )
                pruned = await _prune(conn, channel_id, older_than=retention_cutoff)
        except (aiosqlite.Error, RuntimeError) as e:
            self._logger.error(f"Recording refresh transaction failed for {channel_id}: {e}")
            return StoreError(f"Failed to store recordings for {channel_id}")

        if pruned:
            self._logger.debug(f"Pruned {pruned} expired recordings for {channel_id}")
        return latest_id

    async def prune(
        self,
        channel_id: str,
        older_than: Optional[str] = None,
        keep: Optional[int] = None
    ) -> Union[int, StoreError]:
        """
        Retention pass for one channel.

        Args:
            channel_id: Owning channel.
            older_than: Delete rows created before this timestamp.
            keep: Delete rows beyond the newest `keep`.

        Returns:
            Number of deleted rows.
        """
        try:
            async with self.db.transaction() as conn:
                return await _prune(conn, channel_id, older_than=older_than, keep=keep)
        except (aiosqlite.Error, RuntimeError) as e:
            self._logger.error(f"Prune failed for {channel_id}: {e}")
            return StoreError(f"Failed to prune recordings for {channel_id}")

    async def get(self, recording_id: str) -> Union[Optional[Recording], StoreError]:
        try:
            async with self.db.read() as conn:
                cursor = await conn.execute(
                    f"SELECT {RECORDING_COLUMNS} FROM recordings WHERE recording_id = ?",
                    (recording_id,)
                )
                row = await cursor.fetchone()
        except (aiosqlite.Error, RuntimeError) as e:
            self._logger.error(f"Recording lookup failed: {e}")
            return StoreError("Failed to get recording")

        return Recording.from_row(row) if row is not None else None

    async def get_recordings(self, channel_id: str) -> Union[List[Recording], StoreError]:
        """All cached recordings of a channel, newest first."""
        try:
            async with self.db.read() as conn:
                cursor = await conn.execute(
                    f"""SELECT {RECORDING_COLUMNS} FROM recordings
                        WHERE channel_id = ?
                        ORDER BY created_at DESC, recording_id DESC""",
                    (channel_id,)
                )
                rows = await cursor.fetchall()
        except (aiosqlite.Error, RuntimeError) as e:
            self._logger.error(f"Recording list failed for {channel_id}: {e}")
            return StoreError(f"Failed to get recordings for {channel_id}")

        return [Recording.from_row(row) for row in rows]
