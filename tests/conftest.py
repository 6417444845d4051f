"""
Pytest fixtures and configuration for livesync tests
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from livesync.channel_store import ChannelStore, ChannelUpsert
from livesync.database import Database
from livesync.recording_store import RecordingStore
from livesync.twitch_api import RecordingData


@pytest.fixture
def db_path(tmp_path):
    """Temporary SQLite file"""
    return str(tmp_path / "livesync.db")


@pytest.fixture
def open_stores(db_path):
    """
    Async factory returning (db, channel_store, recording_store).

    The database must be created inside the running loop of the test, so
    this hands out a coroutine function instead of connected objects.
    """
    async def _open(channels=()):
        db = Database(db_path)
        await db.connect()
        channel_store = ChannelStore(db)
        recording_store = RecordingStore(db)
        if channels:
            await channel_store.sync_followed_channels(
                [ChannelUpsert(channel_id=c, channel_name=f"name_{c}") for c in channels],
                "2024-01-01T00:00:00Z"
            )
        return db, channel_store, recording_store
    return _open


@pytest.fixture
def make_recording():
    """Factory for upstream recording payloads"""
    def _make(recording_id, created_at, channel_id="A", title=None, duration=3600):
        return RecordingData(
            recording_id=recording_id,
            channel_id=channel_id,
            title=title or f"VOD {recording_id}",
            duration_seconds=duration,
            created_at=created_at,
            thumbnail_url=f"https://example.com/{recording_id}.jpg"
        )
    return _make


@pytest.fixture
def fake_api():
    """Twitch client double with empty successful responses"""
    api = MagicMock()
    api.list_followed_channels = AsyncMock(return_value=[])
    api.list_live_streams = AsyncMock(return_value=[])
    api.list_recordings = AsyncMock(return_value=[])
    api.lookup_users = AsyncMock(return_value=[])
    return api
