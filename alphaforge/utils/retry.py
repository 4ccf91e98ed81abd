import asyncio
import socket
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from alphaforge.exceptions import TransientBrokerError
from alphaforge.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Connection reset / refused, timeouts, DNS failures, broker 5xx/408.
DEFAULT_TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    TransientBrokerError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    socket.gaierror,
)


def is_transient(exc: BaseException, transient_errors: Tuple[Type[BaseException], ...] = DEFAULT_TRANSIENT_ERRORS) -> bool:
    return isinstance(exc, transient_errors)


class RetryPolicy:
    """
    Bounded exponential backoff for transient failures.

    The wrapped function is invoked at most ``max_attempts`` times. Between
    attempts the policy sleeps ``base_delay * 2 ** attempt``. Non-transient
    errors propagate on the first failure.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: Optional[float] = None,
        transient_errors: Tuple[Type[BaseException], ...] = DEFAULT_TRANSIENT_ERRORS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.transient_errors = transient_errors
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt + 1`` (attempt is 0-based)."""
        delay = self.base_delay * (2 ** attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    async def run(self, func: Callable[[], Awaitable[T]], *, description: str = "") -> T:
        name = description or getattr(func, "__name__", "call")
        attempt = 0
        while True:
            try:
                return await func()
            except Exception as e:
                if not is_transient(e, self.transient_errors):
                    raise

                if attempt >= self.max_attempts - 1:
                    logger.warning(
                        f"Max retries ({self.max_attempts}) exhausted for {name}",
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    raise

                delay = self.delay_for(attempt)
                logger.warning(
                    f"Transient error in {name}, retrying ({attempt + 1}/{self.max_attempts - 1})",
                    error=str(e),
                    error_type=type(e).__name__,
                    wait=f"{delay:.2f}s",
                )
                await self._sleep(delay)
                attempt += 1
