"""
Session resolution shared by the gateway, the FSM and the stream manager.

Reads go cache-first, falling back to the CredentialStore and repopulating the
cache. Every write updates the store and then evicts the cache entry before
returning. A per-user write generation keeps a read that overlapped a write
from putting the pre-write row back into the cache.
"""
from collections import defaultdict
from typing import Any, DefaultDict, Optional

from alphaforge.domain.models import BrokerSession, utc_now
from alphaforge.exceptions import InvalidSession, NotConnected, SessionLocked
from alphaforge.monitoring.logger import get_logger
from alphaforge.session.cache import SessionCache
from alphaforge.storage.credential_store import CredentialStore

logger = get_logger(__name__)


class SessionService:
    def __init__(self, store: CredentialStore, cache: SessionCache):
        self.store = store
        self.cache = cache
        self._generations: DefaultDict[str, int] = defaultdict(int)

    async def get_session(self, user_id: str) -> Optional[BrokerSession]:
        """Cache-through read. Returns None when the user has no session row."""
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached

        generation = self._generations[user_id]
        session = await self.store.get(user_id)
        if session is not None and self._generations[user_id] == generation:
            self.cache.set(session)
        return session

    async def load(self, user_id: str) -> Optional[BrokerSession]:
        """Authoritative read straight from the store."""
        return await self.store.get(user_id)

    async def get_session_or_raise(self, user_id: str) -> BrokerSession:
        """
        Resolve a usable session for a broker call.

        Raises:
            NotConnected: No session row
            InvalidSession: Key or secret missing
            SessionLocked: Lock still in force
        """
        session = await self.get_session(user_id)
        if session is None:
            raise NotConnected(user_id)
        if not session.has_credentials:
            raise InvalidSession("Broker credentials incomplete. Please reconnect your broker account.")
        if session.is_locked(utc_now()):
            raise SessionLocked(user_id, session.locked_until)
        return session

    async def save_credentials(self, user_id: str, api_key: str, api_secret: str) -> BrokerSession:
        """Store fresh credentials. Any previous token is dropped."""
        existing = await self.store.get(user_id)
        if existing is None:
            session = BrokerSession(user_id=user_id, api_key=api_key, api_secret=api_secret)
        else:
            session = existing.evolve(
                api_key=api_key,
                api_secret=api_secret,
                session_token=None,
                expires_at=None,
            )
        await self._write(session)
        return session

    async def update(self, user_id: str, **changes: Any) -> BrokerSession:
        existing = await self.store.get(user_id)
        if existing is None:
            raise NotConnected(user_id)
        session = existing.evolve(**changes)
        await self._write(session)
        return session

    async def invalidate(self, user_id: str) -> None:
        """Clear the token (credentials kept) and evict the cache."""
        self._bump(user_id)
        await self.store.invalidate(user_id)
        self._evict(user_id)
        logger.info("Broker session invalidated", user_id=user_id)

    async def delete(self, user_id: str) -> None:
        self._bump(user_id)
        await self.store.delete(user_id)
        self._evict(user_id)

    async def _write(self, session: BrokerSession) -> None:
        self._bump(session.user_id)
        await self.store.put(session)
        self._evict(session.user_id)

    def _bump(self, user_id: str) -> None:
        # Bumped on both sides of the store write; a read spanning either edge is discarded
        self._generations[user_id] += 1

    def _evict(self, user_id: str) -> None:
        self._bump(user_id)
        self.cache.invalidate(user_id)
