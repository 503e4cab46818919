"""Rate limiting for repetitive log lines (exit suppression spam)."""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional
import logging

from utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


@dataclass
class RateLimitEntry:
    """Per-key rate limit bookkeeping."""
    last_logged_at: datetime
    suppressed_count: int = 0
    last_message: str = ""


class LogRateLimiter:
    """
    Allows one log line per key per interval and counts the rest.

    Keys are typically "<position_id>:<reason>" so the same suppression
    on the same position is logged once per interval while distinct
    positions/reasons are still visible.
    """

    def __init__(
        self,
        interval_seconds: int = 60,
        name: str = "default",
        clock: Optional[Clock] = None,
        max_tracked_keys: int = 1000
    ):
        """
        Initialize rate limiter.

        Args:
            interval_seconds: Minimum time between two log lines for one key
            name: Name for logging purposes
            clock: Time source (defaults to system clock)
            max_tracked_keys: Bound on tracked keys; oldest keys are evicted
        """
        self.interval = timedelta(seconds=interval_seconds)
        self.name = name
        self.clock = clock or SystemClock()
        self.max_tracked_keys = max_tracked_keys
        self._entries: Dict[str, RateLimitEntry] = {}

    def should_log(self, key: str, message: str = "") -> bool:
        """
        Decide whether a log line for this key may be emitted now.

        Returns:
            True if the caller should log, False if the line is swallowed
        """
        now = self.clock.now()
        entry = self._entries.get(key)

        if entry is None or now - entry.last_logged_at >= self.interval:
            swallowed = entry.suppressed_count if entry else 0
            if swallowed:
                logger.debug(
                    f"RateLimiter '{self.name}': {swallowed} repeats of '{key}' were swallowed"
                )
            self._entries[key] = RateLimitEntry(last_logged_at=now, last_message=message)
            self._evict_if_needed()
            return True

        entry.suppressed_count += 1
        entry.last_message = message
        return False

    def suppressed_count(self, key: str) -> int:
        """Number of lines swallowed for a key since it was last logged."""
        entry = self._entries.get(key)
        return entry.suppressed_count if entry else 0

    def forget(self, key_prefix: str) -> None:
        """Drop every key starting with the given prefix (e.g. a closed position)."""
        for key in [k for k in self._entries if k.startswith(key_prefix)]:
            del self._entries[key]

    def _evict_if_needed(self) -> None:
        if len(self._entries) <= self.max_tracked_keys:
            return
        oldest = sorted(self._entries.items(), key=lambda item: item[1].last_logged_at)
        for key, _ in oldest[: len(self._entries) - self.max_tracked_keys]:
            del self._entries[key]

    def get_stats(self) -> dict:
        """Get current rate limiter statistics."""
        return {
            "name": self.name,
            "tracked_keys": len(self._entries),
            "interval_seconds": self.interval.total_seconds(),
            "suppressed_total": sum(e.suppressed_count for e in self._entries.values()),
        }
