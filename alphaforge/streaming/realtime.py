"""
Per-user realtime tick streams over the broker WebSocket feed.

At most one socket per user. Symbol subscriptions are multiplexed over it and
remembered so a reconnect can replay them. Each stream runs its own reader,
heartbeat and reconnect loop; one user's backoff never delays another's.

Stream lifecycle:
    DISCONNECTED -> CONNECTING -> CONNECTED -> (RECONNECTING -> CONNECTING)* -> DISCONNECTED
"""
from __future__ import annotations

import asyncio
import inspect
import itertools
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import websockets
from websockets.exceptions import InvalidStatus

from alphaforge import constants
from alphaforge.domain.models import BrokerSession, MarketTick
from alphaforge.exceptions import InvalidSession, MalformedMessage, SessionError
from alphaforge.monitoring.logger import get_logger
from alphaforge.session.service import SessionService

logger = get_logger(__name__)

TickSink = Callable[[MarketTick], Any]
ConnectFactory = Callable[[str, Dict[str, str]], Awaitable[Any]]

AUTH_REJECT_STATUSES = (401, 403)


class StreamState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def instrument_key(symbol: str, exchange: str = constants.DEFAULT_EXCHANGE) -> str:
    """Wire form of an instrument: ``EXCHANGE|SYMBOL``."""
    return f"{exchange.strip().upper()}|{symbol.strip().upper()}"


async def _default_connect(url: str, headers: Dict[str, str]):
    # Heartbeat is driven by the manager, not the library
    return await websockets.connect(
        url,
        additional_headers=headers,
        ping_interval=None,
        close_timeout=5,
    )


@dataclass
class UserStream:
    """Live streaming state for one user."""
    user_id: str
    state: StreamState = StreamState.DISCONNECTED
    ws: Any = None
    symbols: Set[str] = field(default_factory=set)
    reconnect_attempts: int = 0
    sinks: Dict[int, TickSink] = field(default_factory=dict)
    heartbeat_task: Optional[asyncio.Task] = None
    run_task: Optional[asyncio.Task] = None
    stopped: bool = False
    ticks_received: int = 0
    malformed_dropped: int = 0


class TickSubscription:
    """Handle for one registered tick sink. ``dispose()`` detaches it."""

    def __init__(self, manager: "RealtimeStreamManager", user_id: str, sink_id: int):
        self._manager = manager
        self.user_id = user_id
        self.sink_id = sink_id
        self._disposed = False

    @property
    def active(self) -> bool:
        return not self._disposed and self._manager._has_sink(self.user_id, self.sink_id)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._manager._remove_sink(self.user_id, self.sink_id)


class RealtimeStreamManager:
    """Registry of per-user tick streams."""

    def __init__(
        self,
        sessions: SessionService,
        url: str = constants.BREEZE_STREAM_URL,
        heartbeat_seconds: float = constants.HEARTBEAT_SECONDS,
        pong_timeout_seconds: float = constants.PONG_TIMEOUT_SECONDS,
        reconnect_base_delay: float = constants.RECONNECT_BASE_DELAY_SECONDS,
        max_reconnect_attempts: int = constants.MAX_RECONNECT_ATTEMPTS,
        replay_subscriptions: bool = True,
        default_exchange: str = constants.DEFAULT_EXCHANGE,
        connect: ConnectFactory = _default_connect,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.sessions = sessions
        self.url = url
        self.heartbeat_seconds = heartbeat_seconds
        self.pong_timeout_seconds = pong_timeout_seconds
        self.reconnect_base_delay = reconnect_base_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.replay_subscriptions = replay_subscriptions
        self.default_exchange = default_exchange
        self._connect_factory = connect
        self._sleep = sleep
        self._streams: Dict[str, UserStream] = {}
        self._sink_ids = itertools.count(1)

    # ========== PUBLIC API ==========

    async def start_user_stream(self, user_id: str, on_tick: TickSink) -> TickSubscription:
        """
        Open the user's stream, or attach ``on_tick`` to the one already running.

        Raises:
            NotConnected / InvalidSession / SessionLocked: session unusable
        """
        existing = self._streams.get(user_id)
        if existing is not None:
            logger.debug("Stream already running, sink attached", user_id=user_id, state=existing.state.value)
            return self._add_sink(existing, on_tick)

        # Registered before the first await so a concurrent start sees it
        stream = UserStream(user_id=user_id, state=StreamState.CONNECTING)
        self._streams[user_id] = stream
        handle = self._add_sink(stream, on_tick)

        try:
            session = await self._resolve_session(user_id)
            await self._open(stream, session)
        except BaseException:
            if self._streams.get(user_id) is stream:
                del self._streams[user_id]
            stream.stopped = True
            stream.state = StreamState.DISCONNECTED
            stream.sinks.clear()
            raise

        if stream.stopped:
            return handle

        stream.run_task = asyncio.create_task(self._run(stream), name=f"tick-stream-{user_id}")
        logger.info("Realtime stream started", user_id=user_id)
        return handle

    async def stop_user_stream(self, user_id: str) -> bool:
        """Close and forget the user's stream. Returns False if none was running."""
        stream = self._streams.pop(user_id, None)
        if stream is None:
            return False

        stream.stopped = True
        stream.sinks.clear()
        self._cancel_heartbeat(stream)
        await self._close_socket(stream)

        task = stream.run_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.debug("Stream reader cancelled", user_id=user_id)

        stream.state = StreamState.DISCONNECTED
        logger.info("Realtime stream stopped", user_id=user_id, ticks_received=stream.ticks_received)
        return True

    async def stop_all(self) -> None:
        for user_id in list(self._streams):
            await self.stop_user_stream(user_id)

    async def subscribe(self, user_id: str, symbol: str, exchange: Optional[str] = None) -> bool:
        """Send a subscribe frame. Returns False when already subscribed or not connected."""
        stream = self._connected_stream(user_id)
        if stream is None:
            return False

        key = instrument_key(symbol, exchange or self.default_exchange)
        if key in stream.symbols:
            return False

        stream.symbols.add(key)
        try:
            await self._send_control(stream.ws, "subscribe", key)
        except Exception:
            stream.symbols.discard(key)
            raise
        logger.info("Symbol subscribed", user_id=user_id, instrument=key)
        return True

    async def unsubscribe(self, user_id: str, symbol: str, exchange: Optional[str] = None) -> bool:
        """Send an unsubscribe frame. Returns False when not subscribed or not connected."""
        stream = self._connected_stream(user_id)
        if stream is None:
            return False

        key = instrument_key(symbol, exchange or self.default_exchange)
        if key not in stream.symbols:
            return False

        stream.symbols.discard(key)
        await self._send_control(stream.ws, "unsubscribe", key)
        logger.info("Symbol unsubscribed", user_id=user_id, instrument=key)
        return True

    def get_stream(self, user_id: str) -> Optional[UserStream]:
        return self._streams.get(user_id)

    def active_users(self) -> List[str]:
        return sorted(self._streams)

    def stream_info(self, user_id: str) -> Optional[Dict[str, Any]]:
        stream = self._streams.get(user_id)
        if stream is None:
            return None
        return {
            "user_id": user_id,
            "state": stream.state.value,
            "symbols": sorted(stream.symbols),
            "reconnect_attempts": stream.reconnect_attempts,
            "sinks": len(stream.sinks),
            "ticks_received": stream.ticks_received,
            "malformed_dropped": stream.malformed_dropped,
        }

    # ========== CONNECTION ==========

    async def _resolve_session(self, user_id: str) -> BrokerSession:
        session = await self.sessions.get_session_or_raise(user_id)
        if not session.session_token:
            raise InvalidSession("Broker session token missing. Please log in to your broker account.")
        return session

    async def _open(self, stream: UserStream, session: BrokerSession) -> None:
        stream.state = StreamState.CONNECTING
        headers = {"X-AppKey": session.api_key, "X-SessionToken": session.session_token}
        ws = await self._connect_factory(self.url, headers)

        if stream.stopped:
            await ws.close()
            return

        stream.ws = ws
        stream.state = StreamState.CONNECTED
        stream.heartbeat_task = asyncio.create_task(self._heartbeat(stream, ws))
        logger.info("Stream socket connected", user_id=stream.user_id)

        if self.replay_subscriptions and stream.symbols:
            try:
                for key in sorted(stream.symbols):
                    await self._send_control(ws, "subscribe", key)
            except Exception:
                # Half-replayed socket is unusable; release it before the caller retries
                self._cancel_heartbeat(stream)
                await self._close_socket(stream)
                stream.state = StreamState.RECONNECTING
                raise
            logger.info("Subscriptions replayed", user_id=stream.user_id, count=len(stream.symbols))

        # Only a fully restored stream clears the backoff
        stream.reconnect_attempts = 0

    async def _run(self, stream: UserStream) -> None:
        """Read until the socket closes, then reconnect with backoff."""
        while not stream.stopped:
            ws = stream.ws
            try:
                await self._read(stream, ws)
                reason = "closed"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                reason = type(e).__name__
                logger.warning("Stream socket error", user_id=stream.user_id, error=str(e)[:200])

            self._cancel_heartbeat(stream)
            if stream.stopped:
                return

            logger.warning("Stream socket disconnected", user_id=stream.user_id, reason=reason)
            if not await self._reconnect(stream):
                return

    async def _reconnect(self, stream: UserStream) -> bool:
        while not stream.stopped:
            if stream.reconnect_attempts >= self.max_reconnect_attempts:
                logger.error(
                    "Stream reconnect attempts exhausted, stream dropped",
                    user_id=stream.user_id,
                    attempts=stream.reconnect_attempts,
                )
                self._drop(stream)
                return False

            delay = self.reconnect_base_delay * (2 ** stream.reconnect_attempts)
            stream.reconnect_attempts += 1
            stream.state = StreamState.RECONNECTING
            logger.info(
                "Stream reconnect scheduled",
                user_id=stream.user_id,
                attempt=stream.reconnect_attempts,
                max_attempts=self.max_reconnect_attempts,
                delay_s=delay,
            )
            await self._sleep(delay)
            if stream.stopped:
                return False

            try:
                session = await self._resolve_session(stream.user_id)
                await self._open(stream, session)
                return not stream.stopped
            except asyncio.CancelledError:
                raise
            except SessionError as e:
                logger.warning("Stream session unusable, stream dropped", user_id=stream.user_id, error=e.kind)
                self._drop(stream)
                return False
            except InvalidStatus as e:
                status = getattr(e.response, "status_code", None)
                if status in AUTH_REJECT_STATUSES:
                    logger.warning("Stream auth rejected, stream dropped", user_id=stream.user_id, status=status)
                    self._drop(stream)
                    return False
                logger.warning("Stream reconnect rejected", user_id=stream.user_id, status=status)
            except Exception as e:
                logger.warning("Stream reconnect failed", user_id=stream.user_id, error=str(e)[:200])
        return False

    def _drop(self, stream: UserStream) -> None:
        if self._streams.get(stream.user_id) is stream:
            del self._streams[stream.user_id]
        stream.stopped = True
        stream.sinks.clear()
        stream.state = StreamState.DISCONNECTED
        self._cancel_heartbeat(stream)

    async def _close_socket(self, stream: UserStream) -> None:
        ws, stream.ws = stream.ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug("Stream socket close failed", user_id=stream.user_id, error=str(e))

    def _cancel_heartbeat(self, stream: UserStream) -> None:
        task, stream.heartbeat_task = stream.heartbeat_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat(self, stream: UserStream, ws: Any) -> None:
        """Ping on a fixed interval; a missing pong closes the socket so the reader reconnects."""
        while not stream.stopped and stream.ws is ws:
            await asyncio.sleep(self.heartbeat_seconds)
            if stream.stopped or stream.ws is not ws:
                return
            try:
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=self.pong_timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    "Stream heartbeat timed out, closing socket",
                    user_id=stream.user_id,
                    pong_timeout_s=self.pong_timeout_seconds,
                )
                await ws.close()
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Stream heartbeat failed", user_id=stream.user_id, error=str(e)[:200])
                return

    # ========== MESSAGES ==========

    async def _read(self, stream: UserStream, ws: Any) -> None:
        async for raw in ws:
            if stream.stopped:
                return
            await self._dispatch(stream, raw)

    async def _dispatch(self, stream: UserStream, raw: Any) -> None:
        if isinstance(raw, (bytes, bytearray)):
            raw = bytes(raw).decode("utf-8", errors="replace")
        if raw.strip() == constants.PONG_MESSAGE:
            return

        try:
            tick = MarketTick.from_payload(json.loads(raw))
        except ValueError as e:
            stream.malformed_dropped += 1
            err = MalformedMessage(str(e))
            logger.warning(
                "Malformed tick dropped",
                user_id=stream.user_id,
                error=err.kind,
                detail=err.message,
                sample=raw[:200],
            )
            return

        stream.ticks_received += 1
        for sink in list(stream.sinks.values()):
            if stream.stopped:
                return
            try:
                result = sink(tick)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Tick sink failed", user_id=stream.user_id, symbol=tick.symbol, error=str(e)[:200])

    @staticmethod
    async def _send_control(ws: Any, action: str, key: str) -> None:
        await ws.send(json.dumps({"action": action, "symbol": key}))

    # ========== SINKS ==========

    def _connected_stream(self, user_id: str) -> Optional[UserStream]:
        stream = self._streams.get(user_id)
        if stream is None or stream.state != StreamState.CONNECTED or stream.ws is None:
            logger.debug("Stream not connected, control frame skipped", user_id=user_id)
            return None
        return stream

    def _add_sink(self, stream: UserStream, sink: TickSink) -> TickSubscription:
        sink_id = next(self._sink_ids)
        stream.sinks[sink_id] = sink
        return TickSubscription(self, stream.user_id, sink_id)

    def _has_sink(self, user_id: str, sink_id: int) -> bool:
        stream = self._streams.get(user_id)
        return stream is not None and sink_id in stream.sinks

    def _remove_sink(self, user_id: str, sink_id: int) -> None:
        stream = self._streams.get(user_id)
        if stream is not None:
            stream.sinks.pop(sink_id, None)
