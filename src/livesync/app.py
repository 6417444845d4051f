"""
Live-state synchronizer - composition root.

Wires the store, the Twitch client and the schedulers together and exposes
the operations request handlers call:
1. List followed channels with favorite/live status
2. Report live streams and new recordings observed while serving requests
3. Warm the recordings cache and keep it fresh in the background
"""

import asyncio
import signal
from typing import List, Optional, Union

from .backoff import BackoffTracker
from .channel_store import ChannelStore, FollowedChannel
from .coalescer import UpdateCoalescer
from .config import Config, load_config
from .database import Database
from .errors import StoreError, SyncError
from .logger import get_logger, setup_logging
from .orchestrator import RefreshOrchestrator
from .recording_store import RecordingStore
from .twitch_api import TokenManager, TwitchAPI


class LiveSyncApp:
    """
    Owns one instance of every component for the lifetime of the process.
    """

    def __init__(self, config: Config):
        """Initialize application with configuration."""
        self.config = config
        self._logger = get_logger('app')

        self.db = Database(config.database.path)
        self.channel_store = ChannelStore(self.db)
        self.recording_store = RecordingStore(self.db)

        self.tokens = TokenManager(
            client_id=config.twitch.client_id,
            client_secret=config.twitch.client_secret,
            access_token=config.twitch.access_token or None,
            refresh_token=config.twitch.refresh_token or None,
            on_refresh=self._on_token_refresh
        )
        self.api = TwitchAPI(config.twitch.client_id, self.tokens)

        self.backoff = BackoffTracker(
            base_delay=config.backoff.base_delay,
            max_delay=config.backoff.max_delay,
            jitter=config.backoff.jitter,
            stale_after=config.backoff.stale_after_hours * 3600
        )

        self.coalescer = UpdateCoalescer(
            self.channel_store,
            retry_delay=config.coalescer.retry_delay
        )

        self.orchestrator = RefreshOrchestrator(
            api=self.api,
            channel_store=self.channel_store,
            recording_store=self.recording_store,
            backoff=self.backoff,
            user_id=config.twitch.user_id,
            cache_config=config.cache,
            coalescer=self.coalescer
        )
        self.coalescer.on_went_offline = self.orchestrator.refresh_offline_channels

    async def _on_token_refresh(self, access_token: str, refresh_token: str) -> None:
        # Tokens live in memory only; a restart needs a fresh pair in config.yaml
        self._logger.info("Twitch user token refreshed")

    # ------------------------------------------------------------------
    # Consumer API
    # ------------------------------------------------------------------

    async def get_channels_with_favorite_status(self) -> Union[List[FollowedChannel], StoreError]:
        """Every followed channel with favorite, live and latest-recording fields."""
        return await self.channel_store.get_all_followed_channels()

    def schedule_live_state_update(
        self,
        live_channel_ids: List[str],
        source_label: str,
        should_cascade: bool = False
    ) -> None:
        self.coalescer.schedule_live_state_update(live_channel_ids, source_label, should_cascade)

    def schedule_latest_recording_update(
        self,
        channel_id: str,
        recording_id: str,
        recording_created_at: str
    ) -> None:
        self.coalescer.schedule_latest_recording_update(channel_id, recording_id, recording_created_at)

    async def populate_initial_cache(self) -> Optional[SyncError]:
        return await self.orchestrator.populate_initial_cache()

    def start_background_refresh(self) -> None:
        self.orchestrator.start_background_refresh()

    async def stop_background_refresh(self) -> None:
        await self.orchestrator.stop_background_refresh()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Connect the database and the HTTP session, warm the cache, start the loop."""
        await self.db.connect()
        await self.api.connect()

        result = await self.populate_initial_cache()
        if isinstance(result, SyncError):
            self._logger.warning(f"Starting with a cold cache: {result}")

        self.start_background_refresh()

    async def stop(self) -> None:
        """Stop background work and release resources."""
        self._logger.info("Cleaning up...")

        await self.stop_background_refresh()
        await self.coalescer.close()

        try:
            await asyncio.wait_for(self.api.disconnect(), timeout=5.0)
        except Exception as e:
            self._logger.warning(f"Error disconnecting Twitch: {e}")

        await self.db.close()
        self._logger.info("Cleanup complete")

    async def start(self) -> None:
        """Run until SIGINT or SIGTERM."""
        self._logger.info("Starting live-state synchronizer...")
        await self.open()

        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        try:
            await stop_event.wait()
        finally:
            self._logger.info("Shutdown signal received...")
            await self.stop()


async def main(config_path: str = "config.yaml"):
    """Main entry point."""
    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        print("Please create config.yaml from config.example.yaml")
        return
    except Exception as e:
        print(f"Configuration error: {e}")
        return

    setup_logging(
        level=config.logging.level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count,
        component_levels=config.logging.components
    )

    if not config.twitch.access_token:
        print("Warning: No twitch.access_token configured, upstream calls will fail")

    app = LiveSyncApp(config)

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    except Exception as e:
        get_logger('app').error(f"Fatal error: {e}")
        raise


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == '__main__':
    run()
