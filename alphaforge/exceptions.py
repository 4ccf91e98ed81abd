"""
Custom exception hierarchy for the broker session and gateway core.

Every caller-visible error carries a stable machine-checkable ``kind`` plus a
human-readable message. The API layer maps kinds to HTTP status codes.

Hierarchy:

    AlphaForgeError (base)
    ├── SessionError            local session problems, never retried
    │   ├── NotConnected
    │   ├── InvalidSession
    │   ├── SessionLocked
    │   ├── SessionNotActive
    │   └── LoginConflict
    ├── OperationalError        local protection or transient upstream
    │   ├── RateLimitExceeded
    │   ├── CircuitOpenError
    │   └── TransientBrokerError   retried by RetryPolicy
    │       ├── BrokerTimeout
    │       ├── UpstreamUnavailable
    │       └── BrokerConnectionError
    ├── BrokerAPIError          broker rejected the call, never retried
    │   ├── SessionExpiredRemote
    │   └── AccessDenied
    ├── InvariantError
    │   └── IllegalTransition
    └── DataError
        └── MalformedMessage

Rules:
    - SessionError / RateLimitExceeded / CircuitOpenError: fail fast, no network.
    - TransientBrokerError: retry with backoff, surface once retries are exhausted.
    - BrokerAPIError: surface immediately; only 401 has a side effect
      (session invalidation).
    - IllegalTransition: programming/ordering error, surfaced as a server error.
    - MalformedMessage: logged and dropped by the stream reader.
"""
from datetime import datetime
from typing import Optional


class AlphaForgeError(Exception):
    """Base exception for all AlphaForge errors."""

    kind = "INTERNAL_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"success": False, "error": self.kind, "message": self.message}


# ============ SESSION (local, never retried) ============

class SessionError(AlphaForgeError):
    """Session resolution or FSM guard failure. Prompts the user to reconnect."""
    kind = "SESSION_ERROR"


class NotConnected(SessionError):
    """No broker session row exists for the user."""
    kind = "NOT_CONNECTED"

    def __init__(self, user_id: str):
        super().__init__(f"Broker account is not connected for user {user_id}")
        self.user_id = user_id


class InvalidSession(SessionError):
    """Session row exists but lacks a field required for the call."""
    kind = "INVALID_SESSION"


class SessionLocked(SessionError):
    """All broker operations are blocked until ``locked_until`` passes."""
    kind = "SESSION_LOCKED"

    def __init__(self, user_id: str, locked_until: Optional[datetime]):
        until = locked_until.isoformat() if locked_until else "unknown"
        super().__init__(f"Broker login temporarily locked until {until}")
        self.user_id = user_id
        self.locked_until = locked_until


class SessionNotActive(SessionError):
    """Guard rejection: the handler needs an active session."""
    kind = "SESSION_NOT_ACTIVE"

    def __init__(self, user_id: str, state: str):
        super().__init__(f"Broker session not active, current state={state}")
        self.user_id = user_id
        self.state = state


class LoginConflict(SessionError):
    """Login started while connected, or completed without being started."""
    kind = "LOGIN_BLOCKED"


# ============ OPERATIONAL ============

class OperationalError(AlphaForgeError):
    """Local protection tripped or upstream temporarily unavailable."""
    kind = "OPERATIONAL_ERROR"


class RateLimitExceeded(OperationalError):
    """Per-user call quota exhausted. No network call was made."""
    kind = "RATE_LIMIT_EXCEEDED"

    def __init__(self, user_id: str, retry_after: float):
        super().__init__(
            f"Broker call quota exceeded, retry in {retry_after:.0f}s"
        )
        self.user_id = user_id
        self.retry_after = retry_after


class CircuitOpenError(OperationalError):
    """Circuit breaker is open; fail fast without hitting the network."""
    kind = "CIRCUIT_OPEN"

    def __init__(self, name: str, retry_after: float):
        super().__init__(
            f"Broker API temporarily unavailable (circuit '{name}' open), "
            f"automatic recovery attempt in {retry_after:.0f}s"
        )
        self.name = name
        self.retry_after = retry_after


class TransientBrokerError(OperationalError):
    """Transient upstream failure. Treatment: retry with backoff."""
    kind = "TRANSIENT_ERROR"

    def __init__(self, message: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class BrokerTimeout(TransientBrokerError):
    """Broker returned 408 or the local request timeout fired."""
    kind = "TIMEOUT"

    def __init__(self, message: str = "", status: Optional[int] = None):
        super().__init__(
            (message or "Broker request timed out")
            + " (check server clock skew; checksum timestamps must be current UTC)",
            status=status,
        )


class UpstreamUnavailable(TransientBrokerError):
    """Broker returned a 5xx status."""
    kind = "UPSTREAM_UNAVAILABLE"


class BrokerConnectionError(TransientBrokerError):
    """Connection reset, refused, or DNS failure."""
    kind = "CONNECTION_FAILED"


# ============ BROKER (business rejection, never retried) ============

class BrokerAPIError(AlphaForgeError):
    """Broker rejected the call: a 4xx status or an embedded Status != 200."""
    kind = "BROKER_ERROR"

    def __init__(self, message: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SessionExpiredRemote(BrokerAPIError):
    """Broker answered 401. The local session has been invalidated."""
    kind = "SESSION_EXPIRED_REMOTE"

    def __init__(self, user_id: str):
        super().__init__(
            "Broker session expired. Re-authentication required.", status=401
        )
        self.user_id = user_id


class AccessDenied(BrokerAPIError):
    """Broker answered 403."""
    kind = "ACCESS_DENIED"

    def __init__(self, detail: str = ""):
        message = (
            "Broker access denied (403). Possible causes: "
            "server IP not whitelisted; invalid API credentials; "
            "checksum mismatch; session token invalid"
        )
        if detail:
            message = f"{message}. Broker said: {detail}"
        super().__init__(message, status=403)


# ============ INVARIANT ============

class InvariantError(AlphaForgeError):
    """Programming or ordering error. Never silently continued."""
    kind = "INVARIANT_ERROR"


class IllegalTransition(InvariantError):
    """Session FSM transition not in the allowed table."""
    kind = "ILLEGAL_TRANSITION"

    def __init__(self, from_state: str, to_state: str, reason: str = ""):
        message = f"Session transition blocked: {from_state} -> {to_state}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.from_state = from_state
        self.to_state = to_state


# ============ DATA ============

class DataError(AlphaForgeError):
    """Bad inbound data. Treatment: log, drop, continue."""
    kind = "DATA_ERROR"


class MalformedMessage(DataError):
    """Tick payload failed to parse. Logged and dropped, never raised to sinks."""
    kind = "MALFORMED_MESSAGE"
