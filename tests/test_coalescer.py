"""
Tests for the update coalescer
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

from livesync.channel_store import LatestRecordingUpdate
from livesync.coalescer import PendingRecording, UpdateCoalescer, is_newer
from livesync.errors import StoreError


TS = "2024-03-01T10:00:00Z"


def fake_store(went_offline=None):
    store = MagicMock()
    store.reconcile_live_state = AsyncMock(return_value=went_offline or [])
    store.update_latest_recordings = AsyncMock(side_effect=lambda updates: len(updates))
    return store


class TestLiveStateCoalescing:
    """Tests for batched live-state writes"""

    def test_concurrent_reports_share_one_flush(self):
        store = fake_store()

        async def report(coalescer, i):
            coalescer.schedule_live_state_update([f"ch{i % 20}", f"ch{(i * 7) % 20}"], f"handler-{i}")

        async def scenario():
            coalescer = UpdateCoalescer(store, clock=lambda: TS)
            await asyncio.gather(*(report(coalescer, i) for i in range(50)))
            await coalescer.wait_idle()

        asyncio.run(scenario())

        store.reconcile_live_state.assert_awaited_once()
        ids, last_seen = store.reconcile_live_state.await_args.args
        assert ids == sorted(f"ch{i}" for i in range(20))
        assert last_seen == TS

    def test_empty_snapshot_is_still_written(self):
        store = fake_store()

        async def scenario():
            coalescer = UpdateCoalescer(store, clock=lambda: TS)
            coalescer.schedule_live_state_update([], "poller")
            await coalescer.wait_idle()

        asyncio.run(scenario())

        store.reconcile_live_state.assert_awaited_once_with([], TS)

    def test_report_during_flush_gets_next_round(self):
        started = gate = None
        calls = []

        async def reconcile(ids, last_seen):
            calls.append(list(ids))
            if len(calls) == 1:
                started.set()
                await gate.wait()
            return []

        store = MagicMock()
        store.reconcile_live_state = reconcile

        async def scenario():
            nonlocal started, gate
            started = asyncio.Event()
            gate = asyncio.Event()
            coalescer = UpdateCoalescer(store, clock=lambda: TS)
            coalescer.schedule_live_state_update(["A"], "first")
            await started.wait()
            coalescer.schedule_live_state_update(["B"], "second")
            coalescer.schedule_live_state_update(["C"], "third")
            gate.set()
            await coalescer.wait_idle()

        asyncio.run(scenario())

        assert calls == [["A"], ["B", "C"]]

    def test_failed_flush_is_retried(self):
        outcomes = [StoreError("locked"), RuntimeError("boom"), []]

        async def reconcile(ids, last_seen):
            outcome = outcomes.pop(0)
            if isinstance(outcome, RuntimeError):
                raise outcome
            return outcome

        store = fake_store()
        store.reconcile_live_state = AsyncMock(side_effect=reconcile)

        async def scenario():
            coalescer = UpdateCoalescer(store, retry_delay=0.01, clock=lambda: TS)
            coalescer.schedule_live_state_update(["A", "B"], "poller")
            await coalescer.wait_idle()
            return coalescer

        coalescer = asyncio.run(scenario())

        assert store.reconcile_live_state.await_count == 3
        for call in store.reconcile_live_state.await_args_list:
            assert call.args[0] == ["A", "B"]
        assert coalescer.pending_live_ids == set()


class TestCascade:
    """Tests for the went-offline cascade"""

    def test_cascade_refreshes_went_offline_only(self):
        store = fake_store(went_offline=["Y"])
        on_offline = AsyncMock()

        async def scenario():
            coalescer = UpdateCoalescer(store, on_went_offline=on_offline, clock=lambda: TS)
            coalescer.schedule_live_state_update(["X"], "background-refresh", True)
            await coalescer.wait_idle()

        asyncio.run(scenario())

        on_offline.assert_awaited_once_with(["Y"])

    def test_no_cascade_without_flag(self):
        store = fake_store(went_offline=["Y"])
        on_offline = AsyncMock()

        async def scenario():
            coalescer = UpdateCoalescer(store, on_went_offline=on_offline, clock=lambda: TS)
            coalescer.schedule_live_state_update(["X"], "request")
            await coalescer.wait_idle()

        asyncio.run(scenario())

        on_offline.assert_not_awaited()

    def test_cascade_flag_survives_merge(self):
        store = fake_store(went_offline=["Y"])
        on_offline = AsyncMock()

        async def scenario():
            coalescer = UpdateCoalescer(store, on_went_offline=on_offline, clock=lambda: TS)
            coalescer.schedule_live_state_update(["X"], "background-refresh", True)
            coalescer.schedule_live_state_update(["Z"], "request", False)
            await coalescer.wait_idle()

        asyncio.run(scenario())

        store.reconcile_live_state.assert_awaited_once_with(["X", "Z"], TS)
        on_offline.assert_awaited_once_with(["Y"])


class TestLatestRecordingCoalescing:
    """Tests for recency-preserving recording merges"""

    def test_newer_recording_wins(self):
        store = fake_store()

        async def scenario():
            coalescer = UpdateCoalescer(store)
            coalescer.schedule_latest_recording_update("A", "v2", "2024-01-02T00:00:00Z")
            coalescer.schedule_latest_recording_update("A", "v1", "2024-01-01T00:00:00Z")
            coalescer.schedule_latest_recording_update("A", "v2b", "2024-01-02T00:00:00Z")
            coalescer.schedule_latest_recording_update("A", "bad", "yesterday")
            coalescer.schedule_latest_recording_update("B", "w1", "2024-01-01T00:00:00Z")
            pending = coalescer.pending_recordings
            await coalescer.wait_idle()
            return pending

        pending = asyncio.run(scenario())

        assert pending["A"] == PendingRecording("v2", "2024-01-02T00:00:00Z")
        store.update_latest_recordings.assert_awaited_once_with([
            LatestRecordingUpdate("A", "v2", "2024-01-02T00:00:00Z"),
            LatestRecordingUpdate("B", "w1", "2024-01-01T00:00:00Z"),
        ])

    def test_older_report_queued_later_is_ignored(self):
        store = fake_store()

        async def scenario():
            coalescer = UpdateCoalescer(store)
            coalescer.schedule_latest_recording_update("chan", "recA", "2024-01-01")
            coalescer.schedule_latest_recording_update("chan", "recB", "2023-06-01")
            await coalescer.wait_idle()

        asyncio.run(scenario())

        store.update_latest_recordings.assert_awaited_once_with([
            LatestRecordingUpdate("chan", "recA", "2024-01-01"),
        ])

    def test_failed_batch_merges_with_newer_reports(self):
        calls = []

        async def update(updates):
            calls.append(list(updates))
            if len(calls) == 1:
                # A newer report arrives while the first write is failing
                coalescer.schedule_latest_recording_update("A", "v3", "2024-01-03T00:00:00Z")
                return StoreError("locked")
            return len(updates)

        store = MagicMock()
        store.update_latest_recordings = update
        coalescer = None

        async def scenario():
            nonlocal coalescer
            coalescer = UpdateCoalescer(store, retry_delay=0.01)
            coalescer.schedule_latest_recording_update("A", "v2", "2024-01-02T00:00:00Z")
            await coalescer.wait_idle()

        asyncio.run(scenario())

        assert calls == [
            [LatestRecordingUpdate("A", "v2", "2024-01-02T00:00:00Z")],
            [LatestRecordingUpdate("A", "v3", "2024-01-03T00:00:00Z")],
        ]

    def test_is_newer_rules(self):
        old = PendingRecording("v1", "2024-01-01T00:00:00Z")
        new = PendingRecording("v2", "2024-01-02T00:00:00Z")
        broken = PendingRecording("v3", "")

        assert is_newer(new, old)
        assert not is_newer(old, new)
        assert not is_newer(PendingRecording("v4", old.created_at), old)
        assert not is_newer(broken, old)
        assert is_newer(old, broken)


class TestClose:
    """Tests for shutdown"""

    def test_reports_after_close_are_dropped(self):
        store = fake_store()

        async def scenario():
            coalescer = UpdateCoalescer(store)
            await coalescer.close()
            coalescer.schedule_live_state_update(["A"], "late")
            coalescer.schedule_latest_recording_update("A", "v1", TS)
            await asyncio.sleep(0.01)
            return coalescer

        coalescer = asyncio.run(scenario())

        store.reconcile_live_state.assert_not_awaited()
        store.update_latest_recordings.assert_not_awaited()
        assert coalescer.pending_live_ids == set()

    def test_close_stops_retrying_flush_and_drops_buffers(self):
        store = fake_store()
        store.reconcile_live_state = AsyncMock(return_value=StoreError("locked"))
        store.update_latest_recordings = AsyncMock(return_value=StoreError("locked"))

        async def scenario():
            coalescer = UpdateCoalescer(store, retry_delay=0.01, clock=lambda: TS)
            coalescer.schedule_live_state_update(["A", "B"], "poller", True)
            coalescer.schedule_latest_recording_update("A", "v1", TS)
            await asyncio.sleep(0.1)
            await coalescer.close()
            calls = (store.reconcile_live_state.await_count, store.update_latest_recordings.await_count)
            await asyncio.sleep(0.05)
            return coalescer, calls

        coalescer, calls = asyncio.run(scenario())

        assert calls[0] >= 2 and calls[1] >= 2
        assert store.reconcile_live_state.await_count == calls[0]
        assert store.update_latest_recordings.await_count == calls[1]
        assert coalescer.pending_live_ids == set()
        assert coalescer.pending_recordings == {}
