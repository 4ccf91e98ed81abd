"""
Circuit breaker in front of every outbound Breeze call.

closed     calls flow; each counted failure bumps the streak, any success clears it
open       calls are rejected with CircuitOpenError before touching the network
half_open  after the cooldown a single trial call is admitted; its outcome decides
           between closed and a fresh open period

Every exception feeds the streak unless ``counts_as_failure`` says otherwise.
The gateway passes ``is_transient`` so only 5xx, timeouts, resets and DNS
errors count there. An uncounted exception leaves the streak untouched and
only frees the half-open trial slot.
"""
import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from alphaforge.exceptions import CircuitOpenError
from alphaforge.monitoring.logger import get_logger

logger = get_logger(__name__)

R = TypeVar("R")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def count_every_failure(exc: BaseException) -> bool:
    return True


class CircuitBreaker:
    """Consecutive-failure breaker with a timed cooldown and single-trial recovery."""

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        name: str = "broker_api",
        counts_as_failure: Callable[[BaseException], bool] = count_every_failure,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._counts_as_failure = counts_as_failure
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._last_open_time: Optional[datetime] = None
        self._probing = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    async def execute(self, func: Callable[[], Awaitable[R]]) -> R:
        """Await ``func()`` if the breaker admits it, recording the outcome."""
        await self.can_execute()
        try:
            result = await func()
        except Exception as exc:
            if self._counts_as_failure(exc):
                await self.record_failure(exc)
            else:
                await self._release_trial()
            raise
        await self.record_success()
        return result

    async def can_execute(self) -> bool:
        """
        Admit a call or raise CircuitOpenError.

        An open breaker whose cooldown has run out moves to half_open and
        admits the caller as its trial call. While that call is outstanding every
        other caller is rejected.
        """
        async with self._lock:
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.OPEN:
                remaining = self.retry_after()
                if remaining > 0:
                    raise CircuitOpenError(self.name, remaining)
                self._transition(CircuitState.HALF_OPEN, reason="cooldown_elapsed")
            elif self._probing:
                raise CircuitOpenError(self.name, self.cooldown_seconds)
            self._probing = True
            return True

    async def record_success(self) -> None:
        async with self._lock:
            self._failure_count = 0
            self._probing = False
            if self._state is not CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED, reason="trial_succeeded")

    async def record_failure(self, exc: BaseException) -> None:
        async with self._lock:
            self._last_failure_time = self._clock()
            self._failure_count += 1
            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, reason="trial_failed", error=str(exc)[:200])
            elif self._state is CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._transition(CircuitState.OPEN, reason="failure_threshold", error=str(exc)[:200])

    async def _release_trial(self) -> None:
        async with self._lock:
            self._probing = False

    async def force_open(self, reason: str = "manual") -> None:
        async with self._lock:
            self._transition(CircuitState.OPEN, reason=reason)

    async def force_close(self) -> None:
        async with self._lock:
            self._failure_count = 0
            self._probing = False
            self._transition(CircuitState.CLOSED, reason="manual")

    def retry_after(self) -> float:
        """Seconds left in the current open period; 0 when not open."""
        if self._state is not CircuitState.OPEN or self._last_open_time is None:
            return 0.0
        open_for = (self._clock() - self._last_open_time).total_seconds()
        return max(0.0, self.cooldown_seconds - open_for)

    def get_state_info(self) -> Dict[str, Any]:
        def _iso(moment: Optional[datetime]) -> Optional[str]:
            return moment.isoformat() if moment else None

        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "cooldown_seconds": self.cooldown_seconds,
            "retry_after": round(self.retry_after(), 3),
            "last_failure": _iso(self._last_failure_time),
            "last_open": _iso(self._last_open_time),
        }

    def _transition(self, target: CircuitState, *, reason: str, **fields: Any) -> None:
        previous = self._state
        self._state = target
        if target is CircuitState.OPEN:
            self._last_open_time = self._clock()
            self._probing = False
        log = logger.warning if target is CircuitState.OPEN else logger.info
        log(
            "Circuit breaker state change",
            breaker=self.name,
            from_state=previous.value,
            to_state=target.value,
            reason=reason,
            failure_count=self._failure_count,
            **fields,
        )
