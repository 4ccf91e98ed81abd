"""
Broker login handshake built on the session FSM.

save_credentials -> begin_login (returns the broker login URL) -> the user logs
in at the broker and comes back with a one-time ``apisession`` ->
complete_login exchanges it through customer details for a session token.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from alphaforge.exceptions import (
    BrokerAPIError,
    InvalidSession,
    LoginConflict,
    SessionLocked,
)
from alphaforge.gateway.broker_gateway import BrokerGateway
from alphaforge.monitoring.logger import get_logger
from alphaforge.session.fsm import SessionFSM, SessionState, TransitionOptions, derive_state

logger = get_logger(__name__)

LOGIN_STATES = (SessionState.CREDENTIALS_SAVED, SessionState.SESSION_EXPIRED)


@dataclass
class LoginResult:
    state: SessionState
    customer_details: Optional[Dict[str, Any]] = None


class BrokerAuthFlow:
    def __init__(self, fsm: SessionFSM, gateway: BrokerGateway):
        self.fsm = fsm
        self.gateway = gateway

    @property
    def sessions(self):
        return self.fsm.sessions

    async def save_credentials(self, user_id: str, api_key: str, api_secret: str) -> SessionState:
        """Store (or rotate) broker API credentials. Rotation drops any token."""
        api_key = (api_key or "").strip()
        api_secret = (api_secret or "").strip()
        if not api_key or not api_secret:
            raise InvalidSession("API key and secret are required")

        state = await self.fsm.get_state(user_id)
        if state == SessionState.LOCKED:
            session = await self.sessions.load(user_id)
            raise SessionLocked(user_id, session.locked_until if session else None)

        if state == SessionState.NONE:
            await self.fsm.transition(
                user_id,
                SessionState.NONE,
                SessionState.CREDENTIALS_SAVED,
                TransitionOptions(api_key=api_key, api_secret=api_secret),
            )
        else:
            await self.sessions.save_credentials(user_id, api_key, api_secret)
            logger.info("Broker credentials rotated", user_id=user_id, previous_state=state.value)
        return SessionState.CREDENTIALS_SAVED

    async def begin_login(self, user_id: str) -> str:
        """Enter AUTH_IN_PROGRESS and return the broker login URL."""
        session = await self.sessions.load(user_id)
        state = derive_state(session, self.fsm.now())

        if state == SessionState.LOCKED:
            raise SessionLocked(user_id, session.locked_until)
        if state == SessionState.SESSION_ACTIVE:
            raise LoginConflict("Broker login blocked: session already active")
        if state not in LOGIN_STATES:
            raise LoginConflict(f"Broker login blocked in state {state.value}")

        await self.fsm.transition(user_id, state, SessionState.AUTH_IN_PROGRESS)
        logger.info("Broker login initiated", user_id=user_id)
        return self.gateway.login_url(session.api_key)

    async def complete_login(self, user_id: str, api_session: str) -> LoginResult:
        """
        Exchange the one-time ``apisession`` for a session token.

        Each broker rejection counts toward the lockout; success resets the count.
        Transient failures propagate without counting.
        """
        if not api_session or not isinstance(api_session, str):
            raise InvalidSession("apisession required")

        session = await self.sessions.load(user_id)
        if session is None or session.auth_started_at is None:
            raise LoginConflict("Broker callback without login initiation")
        if session.is_locked(self.fsm.now()):
            raise SessionLocked(user_id, session.locked_until)

        try:
            details = await self.gateway.customer_details(user_id, api_session)
            success = details.get("Success") if isinstance(details, dict) else None
            token = success.get("session_token") if isinstance(success, dict) else None
            if not token:
                raise BrokerAPIError("Failed to retrieve session token from broker")
        except BrokerAPIError as e:
            state = await self.fsm.record_auth_failure(user_id)
            logger.warning("Broker login exchange failed", user_id=user_id, error=e.kind, state=state.value)
            if state == SessionState.LOCKED:
                refreshed = await self.sessions.load(user_id)
                raise SessionLocked(user_id, refreshed.locked_until if refreshed else None) from e
            raise

        await self.fsm.transition(
            user_id,
            SessionState.AUTH_IN_PROGRESS,
            SessionState.SESSION_ACTIVE,
            TransitionOptions(session_token=str(token)),
        )
        logger.info("Broker session active", user_id=user_id)
        return LoginResult(state=SessionState.SESSION_ACTIVE, customer_details=_public_details(success))

    async def disconnect(self, user_id: str) -> None:
        """Forget the user's broker connection entirely."""
        await self.sessions.delete(user_id)
        logger.info("Broker account disconnected", user_id=user_id)


def _public_details(success: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in success.items() if k != "session_token"}
