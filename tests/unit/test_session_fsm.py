"""
Tests for the broker session state machine.

Validates:
  - state derivation precedence (lock > row > token > expiry)
  - transition table enforcement (illegal pairs raise, nothing persisted)
  - persistence side effects per target state
  - lockout after repeated handshake failures
  - periodic expiry sweep
"""
import pytest
from datetime import timedelta

from alphaforge.domain.models import BrokerSession
from alphaforge.exceptions import IllegalTransition, InvalidSession, SessionLocked, SessionNotActive
from alphaforge.session.fsm import (
    ALLOWED_TRANSITIONS,
    SessionState,
    TransitionOptions,
    derive_state,
    is_allowed,
)


class TestDeriveState:

    def test_no_row_is_none(self, clock):
        assert derive_state(None, clock()) == SessionState.NONE

    def test_no_token_is_credentials_saved(self, clock, make_session):
        assert derive_state(make_session(token=None), clock()) == SessionState.CREDENTIALS_SAVED

    def test_token_without_expiry_is_active(self, clock, make_session):
        assert derive_state(make_session(expires_in_hours=None), clock()) == SessionState.SESSION_ACTIVE

    def test_past_expiry_is_expired(self, clock, make_session):
        session = make_session(expires_in_hours=-1)
        assert derive_state(session, clock()) == SessionState.SESSION_EXPIRED

    def test_lock_wins_over_everything(self, clock, make_session):
        session = make_session(expires_in_hours=-1, locked_until=clock() + timedelta(minutes=5))
        assert derive_state(session, clock()) == SessionState.LOCKED

    def test_lapsed_lock_falls_through(self, clock, make_session):
        session = make_session(token=None, locked_until=clock() - timedelta(seconds=1))
        assert derive_state(session, clock()) == SessionState.CREDENTIALS_SAVED

    def test_auth_in_progress_is_never_derived(self, clock, make_session):
        session = make_session(token=None, auth_started_at=clock())
        assert derive_state(session, clock()) == SessionState.CREDENTIALS_SAVED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {},
        {"token": None},
        {"expires_in_hours": -1},
        {"locked_until_minutes": 10},
    ])
    async def test_get_state_is_stable_without_writes(self, fsm, store, clock, make_session, overrides):
        locked_for = overrides.pop("locked_until_minutes", None)
        if locked_for is not None:
            overrides["locked_until"] = clock() + timedelta(minutes=locked_for)
        await store.put(make_session(**overrides))
        before = await store.get("user-1")

        first = await fsm.get_state("user-1")
        second = await fsm.get_state("user-1")
        assert first == second
        assert await store.get("user-1") == before


class TestTransitionTable:

    def test_locked_is_terminal(self):
        assert ALLOWED_TRANSITIONS[SessionState.LOCKED] == frozenset()

    @pytest.mark.parametrize(
        "from_state,to_state",
        [
            (SessionState.NONE, SessionState.CREDENTIALS_SAVED),
            (SessionState.CREDENTIALS_SAVED, SessionState.AUTH_IN_PROGRESS),
            (SessionState.AUTH_IN_PROGRESS, SessionState.SESSION_ACTIVE),
            (SessionState.AUTH_IN_PROGRESS, SessionState.LOCKED),
            (SessionState.SESSION_ACTIVE, SessionState.SESSION_EXPIRED),
            (SessionState.SESSION_EXPIRED, SessionState.AUTH_IN_PROGRESS),
            (SessionState.SESSION_EXPIRED, SessionState.LOCKED),
        ],
    )
    def test_allowed_pairs(self, from_state, to_state):
        assert is_allowed(from_state, to_state)

    @pytest.mark.parametrize(
        "from_state,to_state",
        [
            (SessionState.NONE, SessionState.SESSION_ACTIVE),
            (SessionState.CREDENTIALS_SAVED, SessionState.SESSION_ACTIVE),
            (SessionState.SESSION_ACTIVE, SessionState.AUTH_IN_PROGRESS),
            (SessionState.LOCKED, SessionState.CREDENTIALS_SAVED),
        ],
    )
    def test_disallowed_pairs(self, from_state, to_state):
        assert not is_allowed(from_state, to_state)

    @pytest.mark.asyncio
    async def test_illegal_transition_raises_without_side_effect(self, fsm, store):
        with pytest.raises(IllegalTransition) as exc_info:
            await fsm.transition("user-1", SessionState.NONE, SessionState.SESSION_ACTIVE,
                                 TransitionOptions(session_token="tok"))
        assert exc_info.value.from_state == "NONE"
        assert exc_info.value.to_state == "SESSION_ACTIVE"
        assert await store.get("user-1") is None


class TestSideEffects:

    @pytest.mark.asyncio
    async def test_save_credentials(self, fsm):
        await fsm.transition("user-1", SessionState.NONE, SessionState.CREDENTIALS_SAVED,
                             TransitionOptions(api_key="k", api_secret="s"))
        assert await fsm.get_state("user-1") == SessionState.CREDENTIALS_SAVED

    @pytest.mark.asyncio
    async def test_save_credentials_requires_both_fields(self, fsm):
        with pytest.raises(InvalidSession):
            await fsm.transition("user-1", SessionState.NONE, SessionState.CREDENTIALS_SAVED,
                                 TransitionOptions(api_key="k"))

    @pytest.mark.asyncio
    async def test_full_login_lifecycle(self, fsm, clock):
        await fsm.transition("user-1", SessionState.NONE, SessionState.CREDENTIALS_SAVED,
                             TransitionOptions(api_key="k", api_secret="s"))
        await fsm.transition("user-1", SessionState.CREDENTIALS_SAVED, SessionState.AUTH_IN_PROGRESS)
        pending = await fsm.sessions.load("user-1")
        assert pending.auth_started_at == clock()

        active = await fsm.transition("user-1", SessionState.AUTH_IN_PROGRESS, SessionState.SESSION_ACTIVE,
                                      TransitionOptions(session_token="tok-1"))
        assert active.session_token == "tok-1"
        assert active.expires_at == clock() + timedelta(hours=24)
        assert active.connected_at == clock()
        assert active.auth_started_at is None
        assert await fsm.get_state("user-1") == SessionState.SESSION_ACTIVE

    @pytest.mark.asyncio
    async def test_activation_requires_token(self, fsm, store, make_session):
        await store.put(make_session(token=None))
        with pytest.raises(InvalidSession):
            await fsm.transition("user-1", SessionState.AUTH_IN_PROGRESS, SessionState.SESSION_ACTIVE)

    @pytest.mark.asyncio
    async def test_explicit_expiry_is_kept(self, fsm, store, clock, make_session):
        await store.put(make_session(token=None))
        expires_at = clock() + timedelta(hours=2)
        session = await fsm.transition("user-1", SessionState.AUTH_IN_PROGRESS, SessionState.SESSION_ACTIVE,
                                       TransitionOptions(session_token="t", expires_at=expires_at))
        assert session.expires_at == expires_at

    @pytest.mark.asyncio
    async def test_expire_clears_token(self, fsm, store, make_session):
        await store.put(make_session())
        session = await fsm.transition("user-1", SessionState.SESSION_ACTIVE, SessionState.SESSION_EXPIRED)
        assert session.session_token is None
        assert session.expires_at is None
        assert session.api_secret == "app-secret"

    @pytest.mark.asyncio
    async def test_lock_sets_locked_until(self, fsm, store, clock, make_session):
        await store.put(make_session(token=None, auth_started_at=clock(), auth_failures=4))
        session = await fsm.transition("user-1", SessionState.AUTH_IN_PROGRESS, SessionState.LOCKED,
                                       TransitionOptions(lock_minutes=10))
        assert session.locked_until == clock() + timedelta(minutes=10)
        assert session.auth_started_at is None
        assert session.auth_failures == 0
        assert await fsm.get_state("user-1") == SessionState.LOCKED

    @pytest.mark.asyncio
    async def test_transition_rejected_while_locked(self, fsm, store, clock, make_session):
        await store.put(make_session(locked_until=clock() + timedelta(minutes=1)))
        with pytest.raises(SessionLocked):
            await fsm.transition("user-1", SessionState.SESSION_ACTIVE, SessionState.SESSION_EXPIRED)
        assert (await store.get("user-1")).session_token == "tok-123"


class TestAuthFailures:

    @pytest.mark.asyncio
    async def test_failures_counted_below_limit(self, fsm, store, clock, make_session):
        await store.put(make_session(token=None, auth_started_at=clock()))
        state = await fsm.record_auth_failure("user-1")
        assert state == SessionState.CREDENTIALS_SAVED
        session = await store.get("user-1")
        assert session.auth_failures == 1
        assert session.auth_started_at is None

    @pytest.mark.asyncio
    async def test_fifth_failure_locks_for_thirty_minutes(self, fsm, store, clock, make_session):
        await store.put(make_session(token=None, auth_failures=4, auth_started_at=clock()))
        assert await fsm.record_auth_failure("user-1") == SessionState.LOCKED
        session = await store.get("user-1")
        assert session.locked_until == clock() + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_lock_lapses_after_lock_window(self, fsm, store, clock, make_session):
        await store.put(make_session(token=None, auth_failures=4, auth_started_at=clock()))
        await fsm.record_auth_failure("user-1")
        clock.advance(minutes=31)
        assert await fsm.get_state("user-1") == SessionState.CREDENTIALS_SAVED

    @pytest.mark.asyncio
    async def test_failure_without_row(self, fsm):
        assert await fsm.record_auth_failure("ghost") == SessionState.NONE


class TestExpirySweep:

    @pytest.mark.asyncio
    async def test_sweep_expires_only_past_sessions(self, fsm, store, make_session, clock):
        await store.put(make_session("old", expires_in_hours=-1))
        await store.put(make_session("fresh", expires_in_hours=5))
        await store.put(make_session("never", expires_in_hours=None))

        assert await fsm.expire_sessions() == ["old"]
        assert (await store.get("old")).session_token is None
        assert (await store.get("fresh")).session_token == "tok-123"
        assert await fsm.get_state("old") == SessionState.CREDENTIALS_SAVED

    @pytest.mark.asyncio
    async def test_sweep_skips_locked_users(self, fsm, store, make_session, clock):
        await store.put(make_session("locked", expires_in_hours=-1, locked_until=clock() + timedelta(minutes=5)))
        assert await fsm.expire_sessions() == []
        assert (await store.get("locked")).session_token == "tok-123"


class TestRequireActive:

    @pytest.mark.asyncio
    async def test_active_passes(self, fsm, store, make_session):
        await store.put(make_session())
        assert await fsm.require_active("user-1") == SessionState.SESSION_ACTIVE

    @pytest.mark.asyncio
    async def test_missing_session_rejected_with_state(self, fsm):
        with pytest.raises(SessionNotActive) as exc_info:
            await fsm.require_active("user-1")
        assert exc_info.value.state == "NONE"
        assert "NONE" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_expired_only_when_allowed(self, fsm, store, make_session):
        await store.put(make_session(expires_in_hours=-1))
        with pytest.raises(SessionNotActive):
            await fsm.require_active("user-1")
        assert await fsm.require_active("user-1", allow_expired=True) == SessionState.SESSION_EXPIRED

    @pytest.mark.asyncio
    async def test_locked_rejected(self, fsm, store, clock, make_session):
        await store.put(make_session(locked_until=clock() + timedelta(minutes=5)))
        with pytest.raises(SessionLocked):
            await fsm.require_active("user-1")


def test_session_repr_hides_secrets(make_session):
    text = repr(make_session())
    assert "app-secret" not in text
    assert "tok-123" not in text
    assert isinstance(make_session(), BrokerSession)
