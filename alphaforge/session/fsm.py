"""
Broker session state machine.

The state is never stored. It is recomputed from the persisted BrokerSession
fields on every read, so the row is the single source of truth.

State Machine:
    NONE              -> CREDENTIALS_SAVED  (user stores API key/secret)
    CREDENTIALS_SAVED -> AUTH_IN_PROGRESS   (user starts the broker login)
    AUTH_IN_PROGRESS  -> SESSION_ACTIVE     (handshake succeeded, token obtained)
    AUTH_IN_PROGRESS  -> LOCKED             (handshake failed repeatedly)
    SESSION_ACTIVE    -> SESSION_EXPIRED    (expiry reached or broker answered 401)
    SESSION_EXPIRED   -> AUTH_IN_PROGRESS   (user re-initiates auth)
    SESSION_EXPIRED   -> LOCKED             (repeated re-auth failures)

LOCKED has no outgoing transitions. It clears only when ``locked_until``
passes, after which derivation yields whatever the remaining fields say.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

from alphaforge.domain.models import BrokerSession, utc_now
from alphaforge.exceptions import (
    IllegalTransition,
    InvalidSession,
    SessionLocked,
    SessionNotActive,
)
from alphaforge.monitoring.logger import get_logger
from alphaforge.session.service import SessionService

logger = get_logger(__name__)


class SessionState(str, Enum):
    """Broker connection lifecycle states."""
    NONE = "NONE"                            # No session row
    CREDENTIALS_SAVED = "CREDENTIALS_SAVED"  # Key/secret stored, no token
    AUTH_IN_PROGRESS = "AUTH_IN_PROGRESS"    # Login handshake started
    SESSION_ACTIVE = "SESSION_ACTIVE"        # Token present and not expired
    SESSION_EXPIRED = "SESSION_EXPIRED"      # Token present but past expires_at
    LOCKED = "LOCKED"                        # locked_until in the future


ALLOWED_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.NONE: frozenset({SessionState.CREDENTIALS_SAVED}),
    SessionState.CREDENTIALS_SAVED: frozenset({SessionState.AUTH_IN_PROGRESS}),
    SessionState.AUTH_IN_PROGRESS: frozenset({SessionState.SESSION_ACTIVE, SessionState.LOCKED}),
    SessionState.SESSION_ACTIVE: frozenset({SessionState.SESSION_EXPIRED}),
    SessionState.SESSION_EXPIRED: frozenset({SessionState.AUTH_IN_PROGRESS, SessionState.LOCKED}),
    SessionState.LOCKED: frozenset(),
}


def is_allowed(from_state: SessionState, to_state: SessionState) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, frozenset())


def derive_state(session: Optional[BrokerSession], now: datetime) -> SessionState:
    """
    Compute the state from persisted fields.

    Precedence: lock, then row presence, then token, then expiry.
    AUTH_IN_PROGRESS is never derived; it only exists as a declared ``from``.
    """
    if session is not None and session.is_locked(now):
        return SessionState.LOCKED
    if session is None:
        return SessionState.NONE
    if not session.session_token:
        return SessionState.CREDENTIALS_SAVED
    if session.is_expired(now):
        return SessionState.SESSION_EXPIRED
    return SessionState.SESSION_ACTIVE


@dataclass
class TransitionOptions:
    """Inputs for the persistence side effect of a transition."""
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    session_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    lock_minutes: Optional[int] = None


class SessionFSM:
    """
    Authoritative broker session state machine for all users.

    ``get_state`` is a pure read. ``transition`` validates the pair against
    ALLOWED_TRANSITIONS before performing exactly one persistence side effect.
    """

    def __init__(
        self,
        sessions: SessionService,
        lock_minutes: int = 30,
        session_ttl_hours: Optional[float] = 24,
        max_auth_failures: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.sessions = sessions
        self.lock_minutes = lock_minutes
        self.session_ttl_hours = session_ttl_hours
        self.max_auth_failures = max_auth_failures
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    async def get_state(self, user_id: str) -> SessionState:
        session = await self.sessions.get_session(user_id)
        return derive_state(session, self._clock())

    async def transition(
        self,
        user_id: str,
        from_state: SessionState,
        to_state: SessionState,
        options: Optional[TransitionOptions] = None,
    ) -> BrokerSession:
        """
        Move ``user_id`` from ``from_state`` to ``to_state``.

        Raises:
            IllegalTransition: Pair not in the allowed table
            SessionLocked: The user is locked; nothing may change until the lock passes
        """
        from_state = SessionState(from_state)
        to_state = SessionState(to_state)
        options = options or TransitionOptions()

        if not is_allowed(from_state, to_state):
            logger.error(
                "Illegal session transition",
                user_id=user_id,
                from_state=from_state.value,
                to_state=to_state.value,
            )
            raise IllegalTransition(from_state.value, to_state.value)

        now = self._clock()
        current = await self.sessions.load(user_id)
        if current is not None and current.is_locked(now):
            logger.warning(
                "Session transition rejected while locked",
                user_id=user_id,
                to_state=to_state.value,
                locked_until=current.locked_until.isoformat(),
            )
            raise SessionLocked(user_id, current.locked_until)

        session = await self._apply(user_id, to_state, options, now)
        logger.info(
            "Session transition",
            user_id=user_id,
            from_state=from_state.value,
            to_state=to_state.value,
        )
        return session

    async def record_auth_failure(
        self,
        user_id: str,
        from_state: SessionState = SessionState.AUTH_IN_PROGRESS,
    ) -> SessionState:
        """Count a failed handshake; lock the user once the limit is reached."""
        session = await self.sessions.load(user_id)
        if session is None:
            return SessionState.NONE

        failures = session.auth_failures + 1
        if failures >= self.max_auth_failures:
            logger.warning(
                "Broker login locked after repeated failures",
                user_id=user_id,
                failures=failures,
                lock_minutes=self.lock_minutes,
            )
            await self.transition(user_id, from_state, SessionState.LOCKED)
            return SessionState.LOCKED

        await self.sessions.update(user_id, auth_failures=failures, auth_started_at=None)
        logger.info("Broker login failed", user_id=user_id, failures=failures, max_failures=self.max_auth_failures)
        return await self.get_state(user_id)

    async def expire_sessions(self) -> List[str]:
        """Clear the token of every session past its expiry. Returns the affected user ids."""
        now = self._clock()
        expired: List[str] = []
        for user_id in await self.sessions.store.find_expired(now):
            try:
                await self.transition(user_id, SessionState.SESSION_ACTIVE, SessionState.SESSION_EXPIRED)
            except SessionLocked:
                logger.info("Expired session skipped while locked", user_id=user_id)
                continue
            expired.append(user_id)
        logger.info("Expired broker sessions swept", count=len(expired))
        return expired

    async def require_active(self, user_id: str, allow_expired: bool = False) -> SessionState:
        """
        Guard for broker-touching handlers.

        Raises:
            SessionLocked: User is locked
            SessionNotActive: No usable session (message carries the current state)
        """
        session = await self.sessions.get_session(user_id)
        state = derive_state(session, self._clock())

        if state == SessionState.LOCKED:
            raise SessionLocked(user_id, session.locked_until)
        if state == SessionState.SESSION_ACTIVE:
            return state
        if state == SessionState.SESSION_EXPIRED and allow_expired:
            return state
        raise SessionNotActive(user_id, state.value)

    # -- side effects -------------------------------------------------------

    async def _apply(
        self,
        user_id: str,
        to_state: SessionState,
        options: TransitionOptions,
        now: datetime,
    ) -> BrokerSession:
        if to_state == SessionState.CREDENTIALS_SAVED:
            if not options.api_key or not options.api_secret:
                raise InvalidSession("API key and secret are required to save broker credentials")
            return await self.sessions.save_credentials(user_id, options.api_key, options.api_secret)

        if to_state == SessionState.AUTH_IN_PROGRESS:
            return await self.sessions.update(user_id, auth_started_at=now)

        if to_state == SessionState.SESSION_ACTIVE:
            if not options.session_token:
                raise InvalidSession("Session token is required to activate a broker session")
            expires_at = options.expires_at
            if expires_at is None and self.session_ttl_hours is not None:
                expires_at = now + timedelta(hours=self.session_ttl_hours)
            return await self.sessions.update(
                user_id,
                session_token=options.session_token,
                expires_at=expires_at,
                connected_at=now,
                auth_started_at=None,
                auth_failures=0,
                locked_until=None,
            )

        if to_state == SessionState.SESSION_EXPIRED:
            return await self.sessions.update(user_id, session_token=None, expires_at=None)

        if to_state == SessionState.LOCKED:
            minutes = options.lock_minutes or self.lock_minutes
            return await self.sessions.update(
                user_id,
                locked_until=now + timedelta(minutes=minutes),
                auth_started_at=None,
                auth_failures=0,
            )

        raise IllegalTransition(SessionState.NONE.value, to_state.value, reason="no side effect defined")
