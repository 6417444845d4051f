"""
Per-channel retry backoff for recording refreshes.

Process memory only; a restart forgets every entry.
"""

import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from .logger import get_channel_logger


@dataclass
class BackoffEntry:
    failure_count: int
    next_attempt_at: float  # seconds, same clock as the `now` arguments


class BackoffTracker:
    """
    Decides whether a channel may be hit upstream right now.

    Delay after the n-th consecutive failure is
    min(base_delay * 2^(n-1), max_delay), stretched by a random factor in
    [1, 1 + jitter] so that channels failing together do not retry together.
    A success drops the entry entirely.
    """

    def __init__(
        self,
        base_delay: float = 60.0,
        max_delay: float = 3600.0,
        jitter: float = 0.3,
        stale_after: float = 24 * 3600.0,
        rng: Optional[Callable[[], float]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            base_delay: Seconds to wait after the first failure.
            max_delay: Cap on the un-jittered delay.
            jitter: Maximum extra fraction added to the delay.
            stale_after: Entries whose retry time passed this long ago are swept.
            rng: Uniform [0, 1) source, random.random by default.
            clock: Time source used when `now` is omitted.
        """
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.stale_after = stale_after
        self._rng = rng or random.random
        self._clock = clock
        self._entries: Dict[str, BackoffEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, channel_id: str) -> bool:
        return channel_id in self._entries

    def get(self, channel_id: str) -> Optional[BackoffEntry]:
        return self._entries.get(channel_id)

    def now(self) -> float:
        return self._clock()

    def delay_for(self, failure_count: int) -> float:
        """Un-jittered delay after `failure_count` consecutive failures."""
        exponent = max(0, failure_count - 1)
        # Large exponents would overflow float math; the cap applies anyway
        if exponent > 62:
            return self.max_delay
        return min(self.base_delay * (2 ** exponent), self.max_delay)

    def is_eligible(self, channel_id: str, now: Optional[float] = None) -> bool:
        entry = self._entries.get(channel_id)
        if entry is None:
            return True
        now = self._clock() if now is None else now
        return now >= entry.next_attempt_at

    def record_failure(self, channel_id: str, now: Optional[float] = None) -> BackoffEntry:
        now = self._clock() if now is None else now
        entry = self._entries.get(channel_id)
        if entry is None:
            entry = BackoffEntry(failure_count=0, next_attempt_at=now)
            self._entries[channel_id] = entry

        entry.failure_count += 1
        delay = self.delay_for(entry.failure_count)
        jittered = delay * (1 + self._rng() * self.jitter)
        entry.next_attempt_at = now + jittered

        if entry.failure_count >= 3:
            get_channel_logger(channel_id, 'backoff').warning(
                f"Failed {entry.failure_count} times in a row, next attempt in {jittered:.0f}s"
            )

        return entry

    def record_success(self, channel_id: str) -> None:
        self._entries.pop(channel_id, None)

    def sweep(self, active_favorite_ids: Iterable[str], now: Optional[float] = None) -> int:
        """
        Drop entries for channels that are no longer favorites, and entries
        whose retry time lies more than `stale_after` in the past.

        Returns:
            Number of removed entries.
        """
        now = self._clock() if now is None else now
        favorites = set(active_favorite_ids)

        stale = [
            channel_id
            for channel_id, entry in self._entries.items()
            if channel_id not in favorites or now > entry.next_attempt_at + self.stale_after
        ]
        for channel_id in stale:
            del self._entries[channel_id]

        return len(stale)
