"""
Core domain models for the broker session layer.

Plain dataclasses; persistence and wire formats live elsewhere.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (as returned by some DB drivers)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class BrokerSession:
    """
    Persisted broker connection for one user.

    ``session_token`` is issued by the broker after a successful handshake.
    ``expires_at`` of None means the token never expires locally.
    While ``locked_until`` is in the future every operation is blocked.
    """
    user_id: str
    api_key: str
    api_secret: str
    session_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    auth_started_at: Optional[datetime] = None
    auth_failures: int = 0
    connected_at: Optional[datetime] = None

    def __post_init__(self):
        for name in ("expires_at", "locked_until", "auth_started_at", "connected_at"):
            object.__setattr__(self, name, ensure_utc(getattr(self, name)))

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return self.locked_until is not None and self.locked_until > now

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return self.expires_at is not None and self.expires_at < now

    def evolve(self, **changes: Any) -> "BrokerSession":
        return replace(self, **changes)

    def __repr__(self) -> str:
        return (
            f"BrokerSession(user_id={self.user_id!r}, "
            f"has_token={self.session_token is not None}, "
            f"expires_at={self.expires_at}, locked_until={self.locked_until})"
        )


@dataclass(frozen=True)
class MarketTick:
    """A single realtime quote update for an instrument."""
    symbol: str
    ltp: float
    timestamp: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, payload: Any) -> "MarketTick":
        """
        Build a tick from a decoded JSON object.

        Raises:
            ValueError: If the payload lacks a string symbol or numeric ltp
        """
        if not isinstance(payload, dict):
            raise ValueError(f"tick payload must be an object, got {type(payload).__name__}")
        symbol = payload.get("symbol")
        ltp = payload.get("ltp")
        if not isinstance(symbol, str) or not symbol:
            raise ValueError("tick payload missing symbol")
        if isinstance(ltp, bool) or not isinstance(ltp, (int, float)):
            raise ValueError("tick payload missing numeric ltp")
        timestamp = payload.get("timestamp")
        return cls(
            symbol=symbol,
            ltp=float(ltp),
            timestamp=str(timestamp) if timestamp is not None else None,
            raw=dict(payload),
        )
