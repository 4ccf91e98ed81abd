"""
Composition root.

Every stateful service (rate limiter, circuit breaker, session cache, stream
registry) is constructed here exactly once and handed to its consumers.
"""
import asyncio
from dataclasses import dataclass
from typing import Optional

from alphaforge.config.config import Config
from alphaforge.gateway.broker_gateway import BrokerGateway
from alphaforge.gateway.transport import AiohttpTransport, HttpTransport
from alphaforge.monitoring.logger import get_logger
from alphaforge.session.auth_flow import BrokerAuthFlow
from alphaforge.session.cache import SessionCache
from alphaforge.session.fsm import SessionFSM
from alphaforge.session.service import SessionService
from alphaforge.storage.credential_store import (
    CredentialStore,
    InMemoryCredentialStore,
    SqlCredentialStore,
)
from alphaforge.storage.crypto import FernetCipher
from alphaforge.storage.db import Database
from alphaforge.streaming.realtime import ConnectFactory, RealtimeStreamManager
from alphaforge.utils.circuit_breaker import CircuitBreaker
from alphaforge.utils.rate_limiter import RateLimiter
from alphaforge.utils.retry import RetryPolicy, is_transient

logger = get_logger(__name__)


@dataclass
class AppServices:
    config: Config
    store: CredentialStore
    cache: SessionCache
    sessions: SessionService
    fsm: SessionFSM
    rate_limiter: RateLimiter
    circuit_breaker: CircuitBreaker
    gateway: BrokerGateway
    auth_flow: BrokerAuthFlow
    streams: RealtimeStreamManager
    db: Optional[Database] = None

    @classmethod
    def build(
        cls,
        config: Config,
        *,
        store: Optional[CredentialStore] = None,
        transport: Optional[HttpTransport] = None,
        connect: Optional[ConnectFactory] = None,
    ) -> "AppServices":
        db = None
        if store is None:
            store, db = _build_store(config)

        cache = SessionCache(ttl_seconds=config.session.cache_ttl_seconds)
        sessions = SessionService(store, cache)
        fsm = SessionFSM(
            sessions,
            lock_minutes=config.session.lock_minutes,
            session_ttl_hours=config.session.session_ttl_hours,
            max_auth_failures=config.session.max_auth_failures,
        )

        gw = config.gateway
        rate_limiter = RateLimiter(max_calls=gw.rate_limit_calls, window_seconds=gw.rate_limit_window_seconds)
        breaker = CircuitBreaker(
            failure_threshold=gw.circuit_failure_threshold,
            cooldown_seconds=gw.circuit_cooldown_seconds,
            # Broker business and auth rejections prove the API is reachable
            counts_as_failure=is_transient,
        )
        retry = RetryPolicy(max_attempts=gw.retry_max_attempts, base_delay=gw.retry_base_delay_seconds)

        broker = config.broker
        if transport is None:
            transport = AiohttpTransport(
                pool_size=broker.pool_size,
                pool_size_per_host=broker.pool_size_per_host,
                keepalive_seconds=broker.keepalive_seconds,
            )
        gateway = BrokerGateway(
            sessions,
            transport,
            rate_limiter,
            breaker,
            retry,
            base_url=broker.base_url,
            login_url=broker.login_url,
            timeout_seconds=broker.request_timeout_seconds,
        )

        st = config.stream
        stream_kwargs = {}
        if connect is not None:
            stream_kwargs["connect"] = connect
        streams = RealtimeStreamManager(
            sessions,
            url=broker.stream_url,
            heartbeat_seconds=st.heartbeat_seconds,
            pong_timeout_seconds=st.pong_timeout_seconds,
            reconnect_base_delay=st.reconnect_base_delay_seconds,
            max_reconnect_attempts=st.max_reconnect_attempts,
            replay_subscriptions=st.replay_subscriptions_on_reconnect,
            default_exchange=st.default_exchange,
            **stream_kwargs,
        )

        return cls(
            config=config,
            store=store,
            cache=cache,
            sessions=sessions,
            fsm=fsm,
            rate_limiter=rate_limiter,
            circuit_breaker=breaker,
            gateway=gateway,
            auth_flow=BrokerAuthFlow(fsm, gateway),
            streams=streams,
            db=db,
        )

    async def startup(self) -> None:
        if self.db is not None:
            await asyncio.to_thread(self.db.create_all)
        logger.info(
            "Broker services started",
            environment=self.config.environment,
            store=type(self.store).__name__,
        )

    async def shutdown(self) -> None:
        await self.streams.stop_all()
        await self.gateway.close()
        if self.db is not None:
            self.db.dispose()
        logger.info("Broker services stopped")


def _build_store(config: Config):
    data = config.data
    if not data.database_url:
        logger.warning("DATABASE_URL not set, broker sessions are kept in memory only")
        return InMemoryCredentialStore(), None

    key = data.credential_key
    if not key:
        if config.environment == "prod":
            raise ValueError("CREDENTIAL_ENCRYPTION_KEY must be set in production")
        key = FernetCipher.generate_key()
        logger.warning("CREDENTIAL_ENCRYPTION_KEY not set, using an ephemeral key")

    db = Database(data.database_url)
    return SqlCredentialStore(db, FernetCipher(key)), db
