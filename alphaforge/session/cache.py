"""
In-process TTL cache of BrokerSession rows, in front of the CredentialStore.

Reads never touch the network. Writers evict synchronously with the store
update so an invalidated session is never served from cache.
"""
import time
from typing import Callable, Dict, Optional, Tuple

from alphaforge.domain.models import BrokerSession
from alphaforge.monitoring.logger import get_logger

logger = get_logger(__name__)


class SessionCache:
    """Simple time-based session cache keyed by user id."""

    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_size: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: Dict[str, Tuple[BrokerSession, float]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, user_id: str) -> Optional[BrokerSession]:
        """Get cached session if not expired."""
        entry = self._entries.get(user_id)
        if entry is not None:
            session, expires_at = entry
            if self._clock() < expires_at:
                self.hits += 1
                return session
            del self._entries[user_id]
        self.misses += 1
        return None

    def set(self, session: BrokerSession, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[session.user_id] = (session, self._clock() + ttl)

        # Periodic cleanup
        if len(self._entries) >= self.max_size:
            self._cleanup()

    def invalidate(self, user_id: str) -> None:
        if self._entries.pop(user_id, None) is not None:
            logger.debug("Session cache evicted", user_id=user_id)

    def clear(self) -> None:
        """Clear all cached entries."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: str) -> bool:
        return self.get(user_id) is not None

    def _cleanup(self) -> None:
        """Remove expired entries; if still full, keep the newest half."""
        now = self._clock()
        expired = [k for k, (_, exp) in self._entries.items() if exp <= now]
        for k in expired:
            del self._entries[k]

        if len(self._entries) >= self.max_size:
            newest = sorted(self._entries.items(), key=lambda item: item[1][1])
            self._entries = dict(newest[-self.max_size // 2:])
