"""
Per-user fixed-window rate limiter guarding the broker's call quota.

Single-process, in-memory. Never blocks: a denied call fails fast.
"""
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from alphaforge.exceptions import RateLimitExceeded
from alphaforge.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class RateLimitWindow:
    """Calls counted in the current window and when it resets (monotonic seconds)."""
    count: int
    reset_at: float


class RateLimiter:
    """
    Fixed window rate limiter keyed by user id.

    On check:
      - no window, or window expired -> fresh window with count 1, allow
      - count >= max_calls           -> deny
      - otherwise                    -> increment, allow
    """

    def __init__(
        self,
        max_calls: int = 100,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, RateLimitWindow] = {}

    def check(self, user_id: str) -> bool:
        """Count one call for ``user_id``. Returns False if the quota is exhausted."""
        now = self._clock()
        window = self._windows.get(user_id)

        if window is None or now >= window.reset_at:
            self._windows[user_id] = RateLimitWindow(count=1, reset_at=now + self.window_seconds)
            return True

        if window.count >= self.max_calls:
            return False

        window.count += 1
        return True

    def check_or_raise(self, user_id: str) -> None:
        """Like check(), but raises RateLimitExceeded on denial."""
        if not self.check(user_id):
            retry_after = self.retry_after(user_id) or 0.0
            logger.warning(
                "Broker rate limit exceeded",
                user_id=user_id,
                max_calls=self.max_calls,
                window_seconds=self.window_seconds,
                retry_after=round(retry_after, 1),
            )
            raise RateLimitExceeded(user_id, retry_after)

    def retry_after(self, user_id: str) -> Optional[float]:
        """Seconds until the user's window resets, or None if no window is active."""
        window = self._windows.get(user_id)
        if window is None:
            return None
        return max(0.0, window.reset_at - self._clock())

    def get_window(self, user_id: str) -> Optional[RateLimitWindow]:
        return self._windows.get(user_id)

    def reset(self, user_id: Optional[str] = None) -> None:
        """Drop one user's window, or all windows."""
        if user_id is None:
            self._windows.clear()
        else:
            self._windows.pop(user_id, None)
