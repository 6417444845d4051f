"""
Refresh orchestrator.

Drives the periodic cycle

    sync follow list -> poll live streams -> compute interval
        -> refresh one favorite's recordings -> sleep

and the batched sweeps used at startup and when channels go offline.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Union

from .backoff import BackoffTracker
from .channel_store import ChannelStore, ChannelUpsert
from .coalescer import UpdateCoalescer
from .config import CacheConfig
from .errors import NotAuthenticated, SyncError
from .logger import get_channel_logger, get_logger
from .recording_store import RecordingStore
from .timeutil import cutoff_timestamp, now_timestamp
from .twitch_api import TwitchAPI


RefreshResult = Union[Optional[str], SyncError]


class RefreshOrchestrator:
    """
    Keeps cached recordings of favorite channels fresh.

    One favorite is refreshed per tick, round-robin, with the tick interval
    sized so that every favorite is visited within 80% of the cache TTL.
    """

    SOURCE_LABEL = "background-refresh"

    def __init__(
        self,
        api: TwitchAPI,
        channel_store: ChannelStore,
        recording_store: RecordingStore,
        backoff: BackoffTracker,
        user_id: str,
        cache_config: Optional[CacheConfig] = None,
        coalescer: Optional[UpdateCoalescer] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """
        Args:
            api: Twitch API client.
            channel_store: Followed channels table.
            recording_store: Recordings table.
            backoff: Per-channel retry gate.
            user_id: Twitch user whose follows are cached.
            cache_config: Refresh cadence settings.
            coalescer: Receives live-stream snapshots from each tick.
            sleep: Awaitable sleep, replaceable in tests.
        """
        self.api = api
        self.channel_store = channel_store
        self.recording_store = recording_store
        self.backoff = backoff
        self.user_id = user_id
        self.config = cache_config or CacheConfig()
        self.coalescer = coalescer
        self._sleep = sleep
        self._logger = get_logger('orchestrator')

        self._refresh_index = 0
        self._current_interval = self.config.ttl_seconds / 20
        self._loop_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Interval
    # ------------------------------------------------------------------

    def compute_refresh_interval(self, favorite_count: int) -> float:
        """Seconds between ticks for the given number of favorites."""
        if favorite_count <= 0:
            return float(self.config.ttl_seconds)

        # Every favorite refreshed within 80% of the TTL
        interval = self.config.ttl_seconds * 0.8 / favorite_count
        return max(self.config.min_refresh_interval, min(interval, self.config.max_refresh_interval))

    @property
    def current_interval(self) -> float:
        return self._current_interval

    # ------------------------------------------------------------------
    # Upstream sync
    # ------------------------------------------------------------------

    async def sync_follow_list(self) -> Optional[SyncError]:
        """Replace the stored follow list with the upstream one."""
        follows = await self.api.list_followed_channels(self.user_id)
        if isinstance(follows, SyncError):
            return follows

        profile_images = {}
        if follows:
            users = await self.api.lookup_users(ids=[f.channel_id for f in follows])
            if isinstance(users, SyncError):
                # The store keeps the previously known images
                self._logger.warning(f"Profile lookup failed, keeping cached images: {users}")
            else:
                profile_images = {u.id: u.profile_image_url for u in users}

        upserts = [
            ChannelUpsert(
                channel_id=f.channel_id,
                channel_name=f.channel_name,
                profile_image_url=profile_images.get(f.channel_id, ''),
                followed_at=f.followed_at
            )
            for f in follows
        ]

        result = await self.channel_store.sync_followed_channels(upserts, now_timestamp())
        if isinstance(result, SyncError):
            return result

        self._logger.debug(f"Follow list synced: {len(upserts)} channels")
        return None

    async def poll_live_streams(self) -> Optional[SyncError]:
        """Feed the upstream live-stream set into the coalescer."""
        if self.coalescer is None:
            return None

        streams = await self.api.list_live_streams(self.user_id)
        if isinstance(streams, SyncError):
            return streams

        self.coalescer.schedule_live_state_update(
            [s.user_id for s in streams], self.SOURCE_LABEL, True
        )
        return None

    # ------------------------------------------------------------------
    # Recording refresh
    # ------------------------------------------------------------------

    async def refresh_recordings_for_channel(self, channel_id: str) -> RefreshResult:
        """
        Fetch the newest recordings of a channel and store them.

        The network call happens before, never inside, the store
        transaction.

        Returns:
            The latest recording id, None when the channel has none, or the
            upstream/store error untouched.
        """
        recordings = await self.api.list_recordings(channel_id, self.config.recordings_fetch_limit)
        if isinstance(recordings, SyncError):
            get_channel_logger(channel_id, 'orchestrator').error(
                f"Failed to fetch recordings: {recordings}"
            )
            return recordings

        if not recordings:
            return None

        return await self.recording_store.apply_refresh(
            channel_id,
            recordings,
            cutoff_timestamp(self.config.retention_days)
        )

    async def refresh_recordings_gated(self, channel_id: str) -> RefreshResult:
        """
        refresh_recordings_for_channel behind the backoff gate.

        A channel still backing off is skipped and reported as None.
        """
        now = self.backoff.now()
        if not self.backoff.is_eligible(channel_id, now):
            get_channel_logger(channel_id, 'orchestrator').debug("Skipping refresh, backing off")
            return None

        result = await self.refresh_recordings_for_channel(channel_id)

        # Auth failures are not the channel's fault; leave its backoff untouched
        if isinstance(result, NotAuthenticated):
            return result
        if isinstance(result, SyncError):
            self.backoff.record_failure(channel_id, now)
        else:
            self.backoff.record_success(channel_id)
        return result

    async def _refresh_in_batches(
        self,
        channel_ids: Sequence[str],
        refresh: Callable[[str], Awaitable[RefreshResult]]
    ) -> Tuple[int, int]:
        """Refresh channels `batch_size` at a time. Returns (succeeded, failed)."""
        succeeded = failed = 0
        batch_size = self.config.batch_size

        for start in range(0, len(channel_ids), batch_size):
            batch = channel_ids[start:start + batch_size]
            results = await asyncio.gather(
                *(refresh(channel_id) for channel_id in batch),
                return_exceptions=True
            )

            for channel_id, result in zip(batch, results):
                if isinstance(result, BaseException):
                    if isinstance(result, asyncio.CancelledError):
                        raise result
                    self._logger.error(f"Unexpected error refreshing {channel_id}: {result!r}")
                    failed += 1
                elif isinstance(result, SyncError):
                    failed += 1
                else:
                    succeeded += 1

            if start + batch_size < len(channel_ids):
                await self._sleep(self.config.batch_delay_ms / 1000)

        return succeeded, failed

    async def populate_initial_cache(self) -> Optional[SyncError]:
        """
        Warm the cache for every favorite before serving requests.

        Never raises. Returns the error if favorites could not be read;
        individual channel failures are only counted and logged.
        """
        self._logger.info("Starting initial cache population...")

        try:
            sync_result = await self.sync_follow_list()
            if isinstance(sync_result, SyncError):
                self._logger.warning(f"Initial follow-list sync failed: {sync_result}")

            favorites = await self.channel_store.get_favorite_channel_ids()
            if isinstance(favorites, SyncError):
                self._logger.error(f"Failed to get favorites: {favorites}")
                return favorites

            if not favorites:
                self._logger.info("No favorites to cache")
                return None

            succeeded, failed = await self._refresh_in_batches(
                favorites, self.refresh_recordings_for_channel
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.exception(f"Initial cache population crashed: {e}")
            return SyncError(f"Initial cache population failed: {e}")

        self._logger.info(
            f"Initial cache population complete: {succeeded} succeeded, {failed} failed"
        )
        return None

    async def refresh_offline_channels(self, channel_ids: List[str]) -> None:
        """Refresh recordings of channels that just went offline, in batches."""
        if not channel_ids:
            return

        succeeded, failed = await self._refresh_in_batches(channel_ids, self.refresh_recordings_gated)
        self._logger.info(
            f"Offline refresh for {len(channel_ids)} channels: {succeeded} ok, {failed} failed"
        )

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def tick(self) -> float:
        """
        Run one scheduler cycle.

        Returns:
            Seconds to sleep before the next cycle.
        """
        sync_result = await self.sync_follow_list()
        if isinstance(sync_result, NotAuthenticated):
            self._logger.warning("Follow-list sync skipped: not authenticated")
        elif isinstance(sync_result, SyncError):
            self._logger.warning(f"Follow-list sync failed, using cached list: {sync_result}")

        live_result = await self.poll_live_streams()
        if isinstance(live_result, SyncError):
            self._logger.warning(f"Live-stream poll failed: {live_result}")

        favorites = await self.channel_store.get_favorite_channel_ids()
        if isinstance(favorites, SyncError):
            self._logger.error(f"Background refresh failed to get favorites: {favorites}")
            return self._current_interval

        self._current_interval = self.compute_refresh_interval(len(favorites))

        if favorites:
            channel_id = favorites[self._refresh_index % len(favorites)]
            self._refresh_index += 1

            result = await self.refresh_recordings_gated(channel_id)
            if isinstance(result, SyncError):
                self._logger.error(f"Background refresh failed for {channel_id}: {result}")

        return self._current_interval

    async def _run_loop(self) -> None:
        while True:
            try:
                interval = await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.exception(f"Unexpected error in background refresh: {e}")
                interval = self._current_interval

            await self._sleep(interval)

    async def sweep_backoff(self) -> int:
        """Drop backoff entries of non-favorites and long-expired entries."""
        favorites = await self.channel_store.get_favorite_channel_ids()
        if isinstance(favorites, SyncError):
            return 0

        removed = self.backoff.sweep(favorites)
        if removed:
            self._logger.debug(f"Swept {removed} stale backoff entries")
        return removed

    async def _run_backoff_sweep(self) -> None:
        while True:
            await self._sleep(self.config.backoff_sweep_interval)
            try:
                await self.sweep_backoff()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.exception(f"Backoff sweep failed: {e}")

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start_background_refresh(self) -> None:
        """Start the refresh loop and the hourly backoff sweep. Restarts if already running."""
        self._cancel_tasks()

        loop = asyncio.get_running_loop()
        self._loop_task = loop.create_task(self._run_loop())
        self._sweep_task = loop.create_task(self._run_backoff_sweep())
        self._logger.info("Background refresh started")

    def _cancel_tasks(self) -> List[asyncio.Task]:
        tasks = [t for t in (self._loop_task, self._sweep_task) if t is not None]
        for task in tasks:
            task.cancel()
        self._loop_task = None
        self._sweep_task = None
        return tasks

    async def stop_background_refresh(self) -> None:
        """Stop both background tasks and wait for them to unwind."""
        tasks = self._cancel_tasks()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._logger.info("Background refresh stopped")
