"""
Channel store: the user's followed channels with favorite and live flags.

All mutations are single transactions; callers never read-then-write
across two store calls.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

import aiosqlite

from .database import Database
from .errors import StoreError
from .logger import get_logger
from .recording_store import RECORDING_COLUMNS, Recording
from .timeutil import now_timestamp, parse_timestamp


@dataclass
class FollowedChannel:
    """A followed_channels row."""
    channel_id: str
    channel_name: str
    profile_image_url: str
    is_favorite: bool
    is_live: bool
    sort_order: int
    last_seen_at: Optional[str]
    latest_recording_id: Optional[str]
    followed_at: Optional[str]
    fetched_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row) -> 'FollowedChannel':
        return cls(
            channel_id=row['channel_id'],
            channel_name=row['channel_name'],
            profile_image_url=row['profile_image_url'],
            is_favorite=bool(row['is_favorite']),
            is_live=bool(row['is_live']),
            sort_order=row['sort_order'],
            last_seen_at=row['last_seen_at'],
            latest_recording_id=row['latest_recording_id'],
            followed_at=row['followed_at'],
            fetched_at=row['fetched_at'],
            updated_at=row['updated_at'],
        )


@dataclass
class ChannelUpsert:
    """Follow-list entry to insert or refresh."""
    channel_id: str
    channel_name: str
    profile_image_url: str = ""
    followed_at: Optional[str] = None


@dataclass
class LatestRecordingUpdate:
    """Pending move of a channel's latest-recording pointer."""
    channel_id: str
    recording_id: str
    recording_created_at: str


CHANNEL_COLUMNS = (
    "channel_id, channel_name, profile_image_url, is_favorite, is_live, sort_order, "
    "last_seen_at, latest_recording_id, followed_at, fetched_at, updated_at"
)


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def advance_last_seen(current: Optional[str], candidate: Optional[str]) -> Optional[str]:
    """
    Pick the later of two last-seen timestamps.

    A missing or unparsable current value is always superseded; an
    unparsable candidate never wins over a valid current value.
    """
    current_dt = parse_timestamp(current)
    if current_dt is None:
        return candidate if candidate else current

    candidate_dt = parse_timestamp(candidate)
    if candidate_dt is not None and candidate_dt > current_dt:
        return candidate
    return current


class ChannelStore:
    """Reads and writes the followed_channels table."""

    def __init__(self, db: Database):
        self.db = db
        self._logger = get_logger('channel_store')

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_all_followed_channels(self) -> Union[List[FollowedChannel], StoreError]:
        """Every followed channel, favorites first in their user order."""
        try:
            async with self.db.read() as conn:
                cursor = await conn.execute(
                    f"""SELECT {CHANNEL_COLUMNS} FROM followed_channels
                        ORDER BY is_favorite DESC, sort_order ASC, channel_name COLLATE NOCASE ASC"""
                )
                rows = await cursor.fetchall()
        except (aiosqlite.Error, RuntimeError) as e:
            self._logger.error(f"get_all_followed_channels failed: {e}")
            return StoreError("Failed to get followed channels")

        return [FollowedChannel.from_row(row) for row in rows]

    async def get_channel(self, channel_id: str) -> Union[Optional[FollowedChannel], StoreError]:
        try:
            async with self.db.read() as conn:
                cursor = await conn.execute(
                    f"SELECT {CHANNEL_COLUMNS} FROM followed_channels WHERE channel_id = ?",
                    (channel_id,)
                )
                row = await cursor.fetchone()
        except (aiosqlite.Error, RuntimeError) as e:
            self._logger.error(f"get_channel failed: {e}")
            return StoreError("Failed to get followed channel")

        return FollowedChannel.from_row(row) if row is not None else None

    async def get_favorite_channel_ids(self) -> Union[List[str], StoreError]:
        """Favorite channel ids in user sort order."""
        try:
            async with self.db.read() as conn:
                cursor = await conn.execute(
                    """SELECT channel_id FROM followed_channels
                       WHERE is_favorite = 1
                       ORDER BY sort_order ASC, channel_id ASC"""
                )
                rows = await cursor.fetchall()
        except (aiosqlite.Error, RuntimeError) as e:
            self._logger.error(f"get_favorite_channel_ids failed: {e}")
            return StoreError("Failed to get favorite channel ids")

        return [row['channel_id'] for row in rows]

    async def get_latest_recordings(
        self,
        channel_ids: Sequence[str]
    ) -> Union[Dict[str, Optional[Recording]], StoreError]:
        """Map each known channel id to its latest cached recording, or None."""
        if not channel_ids:
            return {}

        columns = ", ".join(f"r.{c.strip()}" for c in RECORDING_COLUMNS.split(","))
        try:
            async with self.db.read() as conn:
                cursor = await conn.execute(
                    f"""SELECT c.channel_id AS owner_id, {columns}
                        FROM followed_channels c
                        LEFT JOIN recordings r ON r.recording_id = c.latest_recording_id
                        WHERE c.channel_id IN ({_placeholders(len(channel_ids))})""",
                    tuple(channel_ids)
                )
                rows = await cursor.fetchall()
        except (aiosqlite.Error, RuntimeError) as e:
            self._logger.error(f"get_latest_recordings failed: {e}")
            return StoreError("Failed to get latest recordings")

        return {
            row['owner_id']: Recording.from_row(row) if row['recording_id'] is not None else None
            for row in rows
        }

    # ------------------------------------------------------------------
    # Follow list and favorites
    # ------------------------------------------------------------------

    async def sync_followed_channels(
        self,
        channels: Sequence[ChannelUpsert],
        fetched_at: str
    ) -> Union[int, StoreError]:
        """
        Replace the follow list with `channels` in one transaction.

        Upserts every entry (favorite/live flags untouched) and deletes rows
        not in the list. An empty list skips the delete.

        Returns:
            Number of channels removed.
        """
        now = now_timestamp()
        try:
            async with self.db.transaction() as conn:
                await conn.executemany(
                    """INSERT INTO followed_channels
                           (channel_id, channel_name, profile_image_url, followed_at,
                            fetched_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?)
                       ON CONFLICT(channel_id) DO UPDATE SET
                           channel_name = excluded.channel_name,
                           profile_image_url = CASE
                               WHEN excluded.profile_image_url != '' THEN excluded.profile_image_url
                               ELSE followed_channels.profile_image_url
                           END,
                           followed_at = excluded.followed_at,
                           fetched_at = excluded.fetched_at,
                           updated_at = excluded.updated_at""",
                    [
                        (c.channel_id, c.channel_name, c.profile_image_url or '',
                         c.followed_at, fetched_at, now)
                        for c in channels
                    ]
                )

                if not channels:
                    self._logger.warning("Follow list is empty, skipping removal of unfollowed channels")
                    return 0

                ids = [c.channel_id for c in channels]
                cursor = await conn.execute(
                    f"DELETE FROM followed_channels WHERE channel_id NOT IN ({_placeholders(len(ids))})",
                    tuple(ids)
                )
                removed = cursor.rowcount
        except (aiosqlite.Error, RuntimeError) as e:
            self._logger.error(f"sync_followed_channels failed: {e}")
            return StoreError("Failed to sync followed channels")

        if removed:
            self._logger.info(f"Removed {removed} unfollowed channels")
        return removed

    async def add_favorite(self, channel_id: str) -> Union[bool, StoreError]:
        """
        Mark a followed channel as favorite, appended after existing favorites.

        Returns:
            False if the channel is not followed.
        """
        try:
            async with self.db.transaction() as conn:
                cursor = await conn.execute(
                    "SELECT is_favorite FROM followed_channels WHERE channel_id = ?",
                    (channel_id,)
                )
                row = await cursor.fetchone()
                if row is None:
                    return False
                if row['is_favorite']:
                    return True

                cursor = await conn.execute(
                    "SELECT MAX(sort_order) AS max_order FROM followed_channels WHERE is_favorite = 1"
                )
                max_row = await cursor.fetchone()
                next_order = 0 if max_row['max_order'] is None else max_row['max_order'] + 1

                await conn.execute(
                    """UPDATE followed_channels
                       SET is_favorite = 1, sort_order = ?, updated_at = ?
                       WHERE channel_id = ?""",
                    (next_order, now_timestamp(), channel_id)
                )
        except (aiosqlite.Error, RuntimeError) as e:
            self._logger.error(f"add_favorite failed: {e}")
            return StoreError("Failed to add favorite")

        return True

    async def remove_favorite(self, channel_id: str) -> Union[bool, StoreError]:
        """Unmark a favorite; its sort order resets to the neutral 0."""
        try:
            async with self.db.transaction() as conn:
                cursor = await conn.execute(
                    """UPDATE followed_channels
                       SET is_favorite = 0, sort_order = 0, updated_at = ?
                       WHERE channel_id = ?""",
                    (now_timestamp(), channel_id)
                )
                changed = cursor.rowcount > 0
        except (aiosqlite.Error, RuntimeError) as e:
            self._logger.error(f"remove_favorite failed: {e}")
            return StoreError("Failed to remove favorite")

        return changed

    # ------------------------------------------------------------------
    # Live state and latest recording
    # ------------------------------------------------------------------

    async def reconcile_live_state(
        self,
        currently_live_ids: Sequence[str],
        last_seen_at: str
    ) -> Union[List[str], StoreError]:
        """
        Apply an upstream live-stream snapshot atomically.

        Channels marked live but absent from `currently_live_ids` flip
        offline; an empty snapshot flips every live channel. Channels in the
        snapshot flip live and get `last_seen_at`. Both phases commit
        together.

        Returns:
            Ids of channels that went offline, or StoreError.
        """
        live_ids = list(dict.fromkeys(currently_live_ids))
        now = now_timestamp()

        try:
            async with self.db.transaction() as conn:
                if live_ids:
                    not_live = f"AND channel_id NOT IN ({_placeholders(len(live_ids))})"
                    params = tuple(live_ids)
                else:
                    not_live = ""
                    params = ()

                cursor = await conn.execute(
                    f"SELECT channel_id FROM followed_channels WHERE is_live = 1 {not_live}",
                    params
                )
                went_offline = [row['channel_id'] for row in await cursor.fetchall()]

                if went_offline:
                    await conn.execute(
                        f"""UPDATE followed_channels SET is_live = 0, updated_at = ?
                            WHERE channel_id IN ({_placeholders(len(went_offline))})""",
                        (now, *went_offline)
                    )

                if live_ids:
                    await conn.execute(
                        f"""UPDATE followed_channels
                            SET is_live = 1, last_seen_at = ?, updated_at = ?
                            WHERE channel_id IN ({_placeholders(len(live_ids))})""",
                        (last_seen_at, now, *live_ids)
                    )
        except (aiosqlite.Error, RuntimeError) as e:
            self._logger.error(f"reconcile_live_state failed: {e}")
            return StoreError("Failed to update live states")

        return went_offline

    async def _apply_latest_recording(
        self,
        conn: aiosqlite.Connection,
        update: LatestRecordingUpdate,
        now: str
    ) -> bool:
        """Move one pointer inside an open transaction. False if channel unknown."""
        cursor = await conn.execute(
            "SELECT last_seen_at FROM followed_channels WHERE channel_id = ?",
            (update.channel_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return False

        next_last_seen = advance_last_seen(row['last_seen_at'], update.recording_created_at)

        # Pointer only moves to cached rows (foreign key); last_seen_at advances regardless
        await conn.execute(
            """UPDATE followed_channels
               SET latest_recording_id = CASE
                       WHEN EXISTS (SELECT 1 FROM recordings WHERE recording_id = ?) THEN ?
                       ELSE latest_recording_id
                   END,
                   last_seen_at = ?,
                   updated_at = ?
               WHERE channel_id = ?""",
            (update.recording_id, update.recording_id, next_last_seen, now, update.channel_id)
        )
        return True

    async def update_latest_recording(
        self,
        channel_id: str,
        recording_id: str,
        recording_created_at: str
    ) -> Optional[StoreError]:
        """Point a channel at a recording; last_seen_at only ever moves forward."""
        update = LatestRecordingUpdate(channel_id, recording_id, recording_created_at)
        try:
            async with self.db.transaction() as conn:
                found = await self._apply_latest_recording(conn, update, now_timestamp())
        except (aiosqlite.Error, RuntimeError) as e:
            self._logger.error(f"update_latest_recording failed: {e}")
            return StoreError("Failed to update latest recording")

        if not found:
            return StoreError("Channel not found")
        return None

    async def update_latest_recordings(
        self,
        updates: Sequence[LatestRecordingUpdate]
    ) -> Union[int, StoreError]:
        """
        Bulk variant of update_latest_recording in one transaction.

        Unknown channels are skipped.

        Returns:
            Number of channels updated.
        """
        if not updates:
            return 0

        now = now_timestamp()
        applied = 0
        try:
            async with self.db.transaction() as conn:
                for update in updates:
                    if await self._apply_latest_recording(conn, update, now):
                        applied += 1
        except (aiosqlite.Error, RuntimeError) as e:
            self._logger.error(f"update_latest_recordings failed: {e}")
            return StoreError("Failed to update latest recordings")

        skipped = len(updates) - applied
        if skipped:
            self._logger.debug(f"Skipped {skipped} latest-recording updates for unknown channels")
        return applied
