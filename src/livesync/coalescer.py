"""
Update coalescer.

Request handlers that observe live streams or new recordings report them
here instead of writing to the store directly. Reports made in the same
event-loop turn, or while a write is in flight, are merged and written in
one transaction. Failed writes are re-queued and retried every
`retry_delay` seconds until they succeed, so no report is lost.

All buffer mutation is synchronous; the only suspension points are the
store calls and the retry sleep.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .channel_store import ChannelStore, LatestRecordingUpdate
from .errors import StoreError, SyncError
from .logger import get_logger
from .timeutil import now_timestamp, parse_timestamp


OfflineHandler = Callable[[List[str]], Awaitable[Any]]


@dataclass
class PendingRecording:
    recording_id: str
    created_at: str


def is_newer(candidate: PendingRecording, existing: PendingRecording) -> bool:
    """True if `candidate` should replace `existing`. Ties keep the existing entry."""
    candidate_dt = parse_timestamp(candidate.created_at)
    if candidate_dt is None:
        return False
    existing_dt = parse_timestamp(existing.created_at)
    if existing_dt is None:
        return True
    return candidate_dt > existing_dt


class UpdateCoalescer:
    """
    Batches live-state and latest-recording writes.

    Each buffer has one flush task at most (the single-flight flag); a
    report arriving while that task is writing is picked up by the same
    task's next round.
    """

    def __init__(
        self,
        channel_store: ChannelStore,
        retry_delay: float = 1.0,
        on_went_offline: Optional[OfflineHandler] = None,
        clock: Callable[[], str] = now_timestamp
    ):
        """
        Args:
            channel_store: Store receiving the batched writes.
            retry_delay: Seconds to wait before retrying a failed write.
            on_went_offline: Awaited with the ids that went offline after a
                cascading live-state flush.
            clock: Source of the last_seen_at timestamp for live channels.
        """
        self.channel_store = channel_store
        self.retry_delay = retry_delay
        self.on_went_offline = on_went_offline
        self._clock = clock
        self._logger = get_logger('coalescer')
        self._closed = False

        # Live-state buffer. An empty id set is still a real report ("nobody
        # is live"), so dirtiness is tracked separately.
        self._pending_live: Set[str] = set()
        self._live_dirty = False
        self._cascade_requested = False
        self._live_sources: Set[str] = set()
        self._live_flush_in_flight = False
        self._live_task: Optional[asyncio.Task] = None

        # Latest-recording buffer
        self._pending_recordings: Dict[str, PendingRecording] = {}
        self._recording_flush_in_flight = False
        self._recording_task: Optional[asyncio.Task] = None

        self._cascade_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def schedule_live_state_update(
        self,
        live_channel_ids: Iterable[str],
        source_label: str,
        should_cascade: bool = False
    ) -> None:
        """
        Queue an upstream live-stream snapshot.

        Args:
            live_channel_ids: Channels currently live according to the caller.
            source_label: Caller name, for logs.
            should_cascade: Refresh recordings of channels that go offline.
        """
        if self._closed:
            self._logger.debug(f"Dropping live-state update from {source_label}: coalescer closed")
            return

        self._pending_live.update(live_channel_ids)
        self._live_dirty = True
        self._cascade_requested = self._cascade_requested or should_cascade
        self._live_sources.add(source_label)

        if not self._live_flush_in_flight:
            self._live_flush_in_flight = True
            self._live_task = asyncio.get_running_loop().create_task(self._flush_live_state())

    def schedule_latest_recording_update(
        self,
        channel_id: str,
        recording_id: str,
        recording_created_at: str
    ) -> None:
        """Queue a latest-recording pointer move; the newest recording per channel wins."""
        if self._closed:
            self._logger.debug(f"Dropping latest-recording update for {channel_id}: coalescer closed")
            return

        self._merge_recording(channel_id, PendingRecording(recording_id, recording_created_at))

        if not self._recording_flush_in_flight:
            self._recording_flush_in_flight = True
            self._recording_task = asyncio.get_running_loop().create_task(
                self._flush_latest_recordings()
            )

    def _merge_recording(self, channel_id: str, candidate: PendingRecording) -> None:
        existing = self._pending_recordings.get(channel_id)
        if existing is None or is_newer(candidate, existing):
            self._pending_recordings[channel_id] = candidate

    # ------------------------------------------------------------------
    # Flush tasks
    # ------------------------------------------------------------------

    async def _flush_live_state(self) -> None:
        try:
            # Let every caller of the current loop turn join this batch
            await asyncio.sleep(0)

            while self._live_dirty:
                ids = self._pending_live
                cascade = self._cascade_requested
                sources = self._live_sources
                self._pending_live = set()
                self._cascade_requested = False
                self._live_sources = set()
                self._live_dirty = False

                try:
                    result = await self.channel_store.reconcile_live_state(sorted(ids), self._clock())
                except Exception as e:
                    self._logger.exception(f"Live-state flush raised: {e}")
                    result = StoreError(str(e))

                if isinstance(result, SyncError):
                    # Merge back with anything reported meanwhile
                    self._pending_live |= ids
                    self._cascade_requested = self._cascade_requested or cascade
                    self._live_sources |= sources
                    self._live_dirty = True
                    self._logger.warning(
                        f"Live-state flush failed ({result}), retrying in {self.retry_delay}s"
                    )
                    await asyncio.sleep(self.retry_delay)
                    continue

                self._logger.debug(
                    f"Live state applied: {len(ids)} live, {len(result)} went offline "
                    f"(from {', '.join(sorted(sources))})"
                )

                if cascade and result:
                    self._start_cascade(result)
        finally:
            self._live_flush_in_flight = False

    async def _flush_latest_recordings(self) -> None:
        try:
            await asyncio.sleep(0)

            while self._pending_recordings:
                batch = self._pending_recordings
                self._pending_recordings = {}

                updates = [
                    LatestRecordingUpdate(channel_id, pending.recording_id, pending.created_at)
                    for channel_id, pending in batch.items()
                ]

                try:
                    result = await self.channel_store.update_latest_recordings(updates)
                except Exception as e:
                    self._logger.exception(f"Latest-recording flush raised: {e}")
                    result = StoreError(str(e))

                if isinstance(result, SyncError):
                    for channel_id, pending in batch.items():
                        self._merge_recording(channel_id, pending)
                    self._logger.warning(
                        f"Latest-recording flush of {len(batch)} channels failed ({result}), "
                        f"retrying in {self.retry_delay}s"
                    )
                    await asyncio.sleep(self.retry_delay)
                    continue

                self._logger.debug(f"Latest recordings applied for {result}/{len(batch)} channels")
        finally:
            self._recording_flush_in_flight = False

    def _start_cascade(self, channel_ids: List[str]) -> None:
        if self.on_went_offline is None:
            return

        self._logger.info(f"{len(channel_ids)} channels went offline, refreshing their recordings")
        task = asyncio.get_running_loop().create_task(self._run_cascade(channel_ids))
        self._cascade_tasks.add(task)
        task.add_done_callback(self._cascade_tasks.discard)

    async def _run_cascade(self, channel_ids: List[str]) -> None:
        try:
            await self.on_went_offline(channel_ids)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.exception(f"Offline refresh failed: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def pending_live_ids(self) -> Set[str]:
        return set(self._pending_live)

    @property
    def pending_recordings(self) -> Dict[str, PendingRecording]:
        return dict(self._pending_recordings)

    def _active_tasks(self) -> List[asyncio.Task]:
        tasks = [self._live_task, self._recording_task, *self._cascade_tasks]
        return [t for t in tasks if t is not None and not t.done()]

    async def wait_idle(self) -> None:
        """Wait until both buffers are written and cascades have finished."""
        while True:
            tasks = self._active_tasks()
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        """Cancel pending flushes and discard buffers; later reports are dropped."""
        self._closed = True

        tasks = self._active_tasks()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        dropped = len(self._pending_live) + len(self._pending_recordings)
        self._pending_live.clear()
        self._live_dirty = False
        self._cascade_requested = False
        self._live_sources.clear()
        self._pending_recordings.clear()

        if dropped:
            self._logger.info(f"Discarded {dropped} pending updates on shutdown")
