"""
Tests for the followed channels store
"""
import asyncio

from livesync.channel_store import ChannelUpsert, LatestRecordingUpdate, advance_last_seen
from livesync.errors import StoreError


T1 = "2024-03-01T10:00:00Z"
T2 = "2024-03-01T11:00:00Z"


class TestLiveStateReconciliation:
    """Tests for reconcile_live_state"""

    def test_channel_goes_offline_when_missing_from_snapshot(self, open_stores):
        async def scenario():
            db, channels, _ = await open_stores(["A", "B"])
            try:
                first = await channels.reconcile_live_state(["A"], T1)
                second = await channels.reconcile_live_state([], T2)
                a = await channels.get_channel("A")
                return first, second, a
            finally:
                await db.close()

        first, second, a = asyncio.run(scenario())

        assert first == []
        assert second == ["A"]
        assert a.is_live is False
        assert a.last_seen_at == T1

    def test_partial_snapshot_flips_only_missing_channels(self, open_stores):
        async def scenario():
            db, channels, _ = await open_stores(["A", "B", "C"])
            try:
                await channels.reconcile_live_state(["A", "B"], T1)
                went_offline = await channels.reconcile_live_state(["B", "C"], T2)
                rows = {c.channel_id: c for c in await channels.get_all_followed_channels()}
                return went_offline, rows
            finally:
                await db.close()

        went_offline, rows = asyncio.run(scenario())

        assert went_offline == ["A"]
        assert not rows["A"].is_live
        assert rows["B"].is_live and rows["B"].last_seen_at == T2
        assert rows["C"].is_live and rows["C"].last_seen_at == T2

    def test_unknown_live_ids_are_ignored(self, open_stores):
        async def scenario():
            db, channels, _ = await open_stores(["A"])
            try:
                result = await channels.reconcile_live_state(["Z"], T1)
                a = await channels.get_channel("A")
                z = await channels.get_channel("Z")
                return result, a, z
            finally:
                await db.close()

        result, a, z = asyncio.run(scenario())

        assert result == []
        assert a.is_live is False
        assert z is None

    def test_closed_database_returns_store_error(self, open_stores):
        async def scenario():
            db, channels, _ = await open_stores(["A"])
            await db.close()
            return await channels.reconcile_live_state(["A"], T1)

        assert isinstance(asyncio.run(scenario()), StoreError)


class TestAdvanceLastSeen:
    """Tests for the last-seen monotonic merge"""

    def test_missing_current_takes_candidate(self):
        assert advance_last_seen(None, T1) == T1

    def test_unparsable_current_is_replaced(self):
        assert advance_last_seen("not a date", T1) == T1

    def test_unparsable_candidate_never_wins(self):
        assert advance_last_seen(T1, "garbage") == T1

    def test_only_moves_forward(self):
        assert advance_last_seen(T1, T2) == T2
        assert advance_last_seen(T2, T1) == T2
        assert advance_last_seen(T1, T1) == T1


class TestLatestRecording:
    """Tests for latest-recording pointer updates"""

    def test_unknown_channel_returns_error(self, open_stores):
        async def scenario():
            db, channels, _ = await open_stores(["A"])
            try:
                return await channels.update_latest_recording("Z", "v1", T1)
            finally:
                await db.close()

        result = asyncio.run(scenario())
        assert isinstance(result, StoreError)
        assert "not found" in str(result)

    def test_uncached_recording_only_advances_last_seen(self, open_stores):
        async def scenario():
            db, channels, _ = await open_stores(["A"])
            try:
                result = await channels.update_latest_recording("A", "v-unknown", T2)
                return result, await channels.get_channel("A")
            finally:
                await db.close()

        result, a = asyncio.run(scenario())

        assert result is None
        assert a.latest_recording_id is None
        assert a.last_seen_at == T2

    def test_cached_recording_moves_pointer(self, open_stores, make_recording):
        async def scenario():
            db, channels, recordings = await open_stores(["A"])
            try:
                await recordings.apply_refresh(
                    "A",
                    [make_recording("v2", T2), make_recording("v1", T1)],
                    "2000-01-01T00:00:00Z"
                )
                await channels.reconcile_live_state(["A"], T2)
                await channels.update_latest_recording("A", "v1", T1)
                return await channels.get_channel("A")
            finally:
                await db.close()

        a = asyncio.run(scenario())

        assert a.latest_recording_id == "v1"
        # An older recording never pulls last_seen_at backwards
        assert a.last_seen_at == T2

    def test_bulk_update_skips_unknown_channels(self, open_stores):
        async def scenario():
            db, channels, _ = await open_stores(["A", "B"])
            try:
                applied = await channels.update_latest_recordings([
                    LatestRecordingUpdate("A", "v1", T1),
                    LatestRecordingUpdate("Z", "v9", T1),
                    LatestRecordingUpdate("B", "v2", T2),
                ])
                rows = {c.channel_id: c for c in await channels.get_all_followed_channels()}
                return applied, rows
            finally:
                await db.close()

        applied, rows = asyncio.run(scenario())

        assert applied == 2
        assert rows["A"].last_seen_at == T1
        assert rows["B"].last_seen_at == T2

    def test_get_latest_recordings_joins_rows(self, open_stores, make_recording):
        async def scenario():
            db, channels, recordings = await open_stores(["A", "B"])
            try:
                await recordings.apply_refresh("A", [make_recording("v1", T1)], "2000-01-01T00:00:00Z")
                return await channels.get_latest_recordings(["A", "B", "Z"])
            finally:
                await db.close()

        latest = asyncio.run(scenario())

        assert set(latest) == {"A", "B"}
        assert latest["A"].recording_id == "v1"
        assert latest["B"] is None


class TestFavorites:
    """Tests for favorite flags and ordering"""

    def test_favorites_are_appended_in_order(self, open_stores):
        async def scenario():
            db, channels, _ = await open_stores(["A", "B", "C"])
            try:
                await channels.add_favorite("C")
                await channels.add_favorite("A")
                return await channels.get_favorite_channel_ids()
            finally:
                await db.close()

        assert asyncio.run(scenario()) == ["C", "A"]

    def test_remove_resets_sort_order(self, open_stores):
        async def scenario():
            db, channels, _ = await open_stores(["A", "B"])
            try:
                await channels.add_favorite("A")
                await channels.add_favorite("B")
                removed = await channels.remove_favorite("B")
                b = await channels.get_channel("B")
                favorites = await channels.get_favorite_channel_ids()
                return removed, b, favorites
            finally:
                await db.close()

        removed, b, favorites = asyncio.run(scenario())

        assert removed is True
        assert b.is_favorite is False
        assert b.sort_order == 0
        assert favorites == ["A"]

    def test_add_unknown_channel_returns_false(self, open_stores):
        async def scenario():
            db, channels, _ = await open_stores(["A"])
            try:
                return await channels.add_favorite("Z")
            finally:
                await db.close()

        assert asyncio.run(scenario()) is False

    def test_favorites_listed_first(self, open_stores):
        async def scenario():
            db, channels, _ = await open_stores(["A", "B", "C"])
            try:
                await channels.add_favorite("C")
                return [c.channel_id for c in await channels.get_all_followed_channels()]
            finally:
                await db.close()

        assert asyncio.run(scenario()) == ["C", "A", "B"]


class TestFollowListSync:
    """Tests for sync_followed_channels"""

    def test_unfollowed_channels_are_removed(self, open_stores):
        async def scenario():
            db, channels, _ = await open_stores(["A", "B", "C"])
            try:
                removed = await channels.sync_followed_channels(
                    [ChannelUpsert("A", "Alpha"), ChannelUpsert("C", "Charlie")], T1
                )
                rows = await channels.get_all_followed_channels()
                return removed, rows
            finally:
                await db.close()

        removed, rows = asyncio.run(scenario())

        assert removed == 1
        assert [(c.channel_id, c.channel_name) for c in rows] == [("A", "Alpha"), ("C", "Charlie")]

    def test_empty_follow_list_keeps_existing_rows(self, open_stores):
        async def scenario():
            db, channels, _ = await open_stores(["A", "B"])
            try:
                removed = await channels.sync_followed_channels([], T1)
                return removed, await channels.get_all_followed_channels()
            finally:
                await db.close()

        removed, rows = asyncio.run(scenario())

        assert removed == 0
        assert len(rows) == 2

    def test_sync_preserves_flags_and_profile_image(self, open_stores):
        async def scenario():
            db, channels, _ = await open_stores()
            try:
                await channels.sync_followed_channels(
                    [ChannelUpsert("A", "Alpha", "https://img/a.png")], T1
                )
                await channels.add_favorite("A")
                await channels.reconcile_live_state(["A"], T1)
                await channels.sync_followed_channels([ChannelUpsert("A", "Alpha2", "")], T2)
                return await channels.get_channel("A")
            finally:
                await db.close()

        a = asyncio.run(scenario())

        assert a.channel_name == "Alpha2"
        assert a.profile_image_url == "https://img/a.png"
        assert a.is_favorite is True
        assert a.is_live is True
        assert a.fetched_at == T2
