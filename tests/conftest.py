"""
Pytest configuration and shared fixtures.

Broker I/O is replaced by small fakes: a recording HTTP transport and a fake
websocket whose inbound frames are fed by the test.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from alphaforge.domain.models import BrokerSession
from alphaforge.gateway.broker_gateway import BrokerGateway
from alphaforge.gateway.transport import TransportResponse
from alphaforge.session.cache import SessionCache
from alphaforge.session.fsm import SessionFSM
from alphaforge.session.service import SessionService
from alphaforge.storage.credential_store import InMemoryCredentialStore
from alphaforge.streaming.realtime import RealtimeStreamManager
from alphaforge.utils.circuit_breaker import CircuitBreaker
from alphaforge.utils.rate_limiter import RateLimiter
from alphaforge.utils.retry import RetryPolicy, is_transient


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------

class ManualClock:
    """Datetime clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class MonotonicClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for asyncio.sleep; records delays and yields once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Broker fakes
# ---------------------------------------------------------------------------

class FakeTransport:
    """Records every request; replies from a queue, then with a default OK body."""

    def __init__(self, *responses):
        self.calls = []
        self.responses = list(responses)
        self.default = TransportResponse(200, {"Status": 200, "Success": {"ok": True}})
        self.closed = False

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    async def send(self, method, url, headers, json_body, timeout):
        self.calls.append(
            SimpleNamespace(method=method, url=url, headers=dict(headers), body=json_body, timeout=timeout)
        )
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, BaseException):
            raise response
        return response

    async def close(self) -> None:
        self.closed = True


_CLOSE = object()


class FakeWebSocket:
    """Async-iterable socket. ``feed`` queues inbound frames, ``server_close`` ends iteration."""

    def __init__(self, answer_pings: bool = True):
        self.sent = []
        self.closed = False
        self.pings = 0
        self.answer_pings = answer_pings
        self._inbox = asyncio.Queue()

    def feed(self, message) -> None:
        if isinstance(message, (dict, list)):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def server_close(self) -> None:
        self._inbox.put_nowait(_CLOSE)

    @property
    def frames(self):
        return [json.loads(raw) for raw in self.sent]

    async def send(self, data) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(data)

    async def ping(self):
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            waiter.set_result(0.0)
        return waiter

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._inbox.get()
        if message is _CLOSE:
            self.closed = True
            raise StopAsyncIteration
        return message


class FakeConnector:
    """Connect factory for RealtimeStreamManager. Queue exceptions in ``failures``."""

    def __init__(self, answer_pings: bool = True):
        self.attempts = []
        self.sockets = []
        self.failures = []
        self.answer_pings = answer_pings

    async def __call__(self, url, headers):
        self.attempts.append(SimpleNamespace(url=url, headers=dict(headers)))
        await asyncio.sleep(0)
        if self.failures:
            raise self.failures.pop(0)
        ws = FakeWebSocket(answer_pings=self.answer_pings)
        self.sockets.append(ws)
        return ws


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return ManualClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def store():
    return InMemoryCredentialStore()


@pytest.fixture
def cache():
    return SessionCache(ttl_seconds=3600)


@pytest.fixture
def sessions(store, cache):
    return SessionService(store, cache)


@pytest.fixture
def fsm(sessions, clock):
    return SessionFSM(sessions, lock_minutes=30, session_ttl_hours=24, max_auth_failures=5, clock=clock)


@pytest.fixture
def make_session():
    def _make(user_id="user-1", token="tok-123", expires_in_hours=24, **overrides):
        expires_at = None
        if expires_in_hours is not None:
            expires_at = datetime.now(timezone.utc) + timedelta(hours=expires_in_hours)
        fields = dict(
            user_id=user_id,
            api_key="app-key",
            api_secret="app-secret",
            session_token=token,
            expires_at=expires_at,
        )
        fields.update(overrides)
        return BrokerSession(**fields)
    return _make


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def retry_sleep():
    return RecordingSleep()


@pytest.fixture
def gateway(sessions, transport, retry_sleep):
    return BrokerGateway(
        sessions,
        transport,
        RateLimiter(max_calls=100, window_seconds=60),
        CircuitBreaker(failure_threshold=5, cooldown_seconds=60, counts_as_failure=is_transient),
        RetryPolicy(max_attempts=3, base_delay=1.0, sleep=retry_sleep),
        base_url="https://broker.test/breezeapi",
        login_url="https://broker.test/apiuser/login",
    )


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def stream_manager(sessions, connector, retry_sleep):
    return RealtimeStreamManager(
        sessions,
        url="wss://stream.test/realtime",
        heartbeat_seconds=30,
        pong_timeout_seconds=10,
        reconnect_base_delay=1.0,
        max_reconnect_attempts=3,
        connect=connector,
        sleep=retry_sleep,
    )


@pytest.fixture
def mono_clock():
    return MonotonicClock()


@pytest.fixture
def eventually():
    return wait_until


@pytest.fixture
def silent_connector():
    """Connector whose sockets never answer pings."""
    return FakeConnector(answer_pings=False)
