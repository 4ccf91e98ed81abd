"""
Broker session lifecycle: cache, cache-through service, FSM and login handshake.
"""
from alphaforge.session.cache import SessionCache
from alphaforge.session.fsm import (
    ALLOWED_TRANSITIONS,
    SessionFSM,
    SessionState,
    TransitionOptions,
    derive_state,
)
from alphaforge.session.service import SessionService

__all__ = [
    "ALLOWED_TRANSITIONS",
    "SessionCache",
    "SessionFSM",
    "SessionService",
    "SessionState",
    "TransitionOptions",
    "derive_state",
]
