"""
HTTP API for the broker session and gateway core.

Routes are thin: guards resolve the session state, handlers call one service
method, and the exception handler turns typed errors into status codes.
"""
import math
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Type

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from alphaforge import __version__
from alphaforge.api.guards import get_services, get_user_id, require_active_session
from alphaforge.domain.models import MarketTick
from alphaforge.exceptions import (
    AccessDenied,
    AlphaForgeError,
    BrokerAPIError,
    BrokerConnectionError,
    BrokerTimeout,
    CircuitOpenError,
    IllegalTransition,
    InvalidSession,
    LoginConflict,
    NotConnected,
    RateLimitExceeded,
    SessionExpiredRemote,
    SessionLocked,
    SessionNotActive,
    TransientBrokerError,
    UpstreamUnavailable,
)
from alphaforge.monitoring.logger import get_logger
from alphaforge.runtime.container import AppServices

logger = get_logger(__name__)

# Most specific first
ERROR_STATUS: Dict[Type[AlphaForgeError], int] = {
    NotConnected: 404,
    InvalidSession: 400,
    SessionLocked: 429,
    SessionNotActive: 409,
    LoginConflict: 409,
    RateLimitExceeded: 429,
    CircuitOpenError: 503,
    BrokerTimeout: 504,
    UpstreamUnavailable: 502,
    BrokerConnectionError: 502,
    TransientBrokerError: 502,
    SessionExpiredRemote: 401,
    AccessDenied: 403,
    BrokerAPIError: 422,
    IllegalTransition: 500,
}


def status_for(exc: AlphaForgeError) -> int:
    for exc_type, status in ERROR_STATUS.items():
        if isinstance(exc, exc_type):
            return status
    return 500


class CredentialsBody(BaseModel):
    api_key: str = Field(min_length=1)
    api_secret: str = Field(min_length=1)


class CompleteLoginBody(BaseModel):
    apisession: str = Field(min_length=1)


class SymbolBody(BaseModel):
    symbol: str = Field(min_length=1)
    exchange: Optional[str] = None


class LatestTicks:
    """Last tick per instrument for each streaming user."""

    def __init__(self):
        self._ticks: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def sink_for(self, user_id: str):
        def on_tick(tick: MarketTick) -> None:
            self._ticks.setdefault(user_id, {})[tick.symbol] = {
                "symbol": tick.symbol,
                "ltp": tick.ltp,
                "timestamp": tick.timestamp,
            }
        return on_tick

    def get(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        return dict(self._ticks.get(user_id, {}))

    def clear(self, user_id: str) -> None:
        self._ticks.pop(user_id, None)


def create_app(services: AppServices) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.startup()
        try:
            yield
        finally:
            await services.shutdown()

    app = FastAPI(title="AlphaForge Broker Gateway", version=__version__, lifespan=lifespan)
    app.state.services = services
    app.state.latest_ticks = LatestTicks()
    app.state.tick_handles = {}

    @app.exception_handler(AlphaForgeError)
    async def handle_alphaforge_error(request: Request, exc: AlphaForgeError):
        status = status_for(exc)
        headers = {}
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            headers["Retry-After"] = str(max(1, math.ceil(retry_after)))
        if status >= 500:
            logger.error("Request failed", path=request.url.path, error=exc.kind, message=exc.message)
        else:
            logger.info("Request rejected", path=request.url.path, error=exc.kind, status=status)
        return JSONResponse(status_code=status, content=exc.to_dict(), headers=headers)

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "environment": services.config.environment,
            "circuit_breaker": services.circuit_breaker.get_state_info(),
            "active_streams": len(services.streams.active_users()),
        }

    # ========== SESSION ==========

    @app.get("/api/broker/status")
    async def broker_status(user_id: str = Depends(get_user_id), svc: AppServices = Depends(get_services)):
        state = await svc.fsm.get_state(user_id)
        return {
            "success": True,
            "state": state.value,
            "stream": svc.streams.stream_info(user_id),
        }

    @app.post("/api/broker/credentials")
    async def save_credentials(
        body: CredentialsBody,
        user_id: str = Depends(get_user_id),
        svc: AppServices = Depends(get_services),
    ):
        state = await svc.auth_flow.save_credentials(user_id, body.api_key, body.api_secret)
        return {"success": True, "state": state.value}

    @app.post("/api/broker/auth/login")
    async def begin_login(user_id: str = Depends(get_user_id), svc: AppServices = Depends(get_services)):
        url = await svc.auth_flow.begin_login(user_id)
        return {"success": True, "login_url": url}

    @app.post("/api/broker/auth/complete")
    async def complete_login(
        body: CompleteLoginBody,
        user_id: str = Depends(get_user_id),
        svc: AppServices = Depends(get_services),
    ):
        result = await svc.auth_flow.complete_login(user_id, body.apisession)
        return {"success": True, "state": result.state.value, "customer": result.customer_details}

    @app.post("/api/broker/disconnect")
    async def disconnect(request: Request, user_id: str = Depends(get_user_id), svc: AppServices = Depends(get_services)):
        await svc.streams.stop_user_stream(user_id)
        request.app.state.latest_ticks.clear(user_id)
        request.app.state.tick_handles.pop(user_id, None)
        await svc.auth_flow.disconnect(user_id)
        return {"success": True}

    # ========== BROKER DATA ==========

    @app.get("/api/broker/quotes")
    async def quotes(
        stock_code: str,
        exchange_code: Optional[str] = None,
        product_type: str = "cash",
        user_id: str = Depends(require_active_session),
        svc: AppServices = Depends(get_services),
    ):
        data = await svc.gateway.get_quotes(
            user_id,
            stock_code,
            exchange_code=exchange_code or svc.config.stream.default_exchange,
            product_type=product_type,
        )
        return {"success": True, "data": data}

    @app.post("/api/broker/orders")
    async def place_order(
        order: Dict[str, Any],
        user_id: str = Depends(require_active_session),
        svc: AppServices = Depends(get_services),
    ):
        data = await svc.gateway.place_order(user_id, order)
        return {"success": True, "data": data}

    @app.get("/api/broker/orders")
    async def order_book(
        exchange_code: Optional[str] = None,
        user_id: str = Depends(require_active_session),
        svc: AppServices = Depends(get_services),
    ):
        data = await svc.gateway.get_order_book(
            user_id, exchange_code=exchange_code or svc.config.stream.default_exchange
        )
        return {"success": True, "data": data}

    @app.get("/api/broker/portfolio/holdings")
    async def holdings(user_id: str = Depends(require_active_session), svc: AppServices = Depends(get_services)):
        data = await svc.gateway.get_portfolio_holdings(user_id)
        return {"success": True, "data": data}

    @app.get("/api/broker/portfolio/positions")
    async def positions(user_id: str = Depends(require_active_session), svc: AppServices = Depends(get_services)):
        data = await svc.gateway.get_portfolio_positions(user_id)
        return {"success": True, "data": data}

    # ========== STREAMING ==========

    @app.post("/api/broker/stream/start")
    async def stream_start(
        request: Request,
        user_id: str = Depends(require_active_session),
        svc: AppServices = Depends(get_services),
    ):
        handles = request.app.state.tick_handles
        if user_id not in handles or not handles[user_id].active:
            sink = request.app.state.latest_ticks.sink_for(user_id)
            handles[user_id] = await svc.streams.start_user_stream(user_id, sink)
        return {"success": True, "stream": svc.streams.stream_info(user_id)}

    @app.post("/api/broker/stream/stop")
    async def stream_stop(request: Request, user_id: str = Depends(get_user_id), svc: AppServices = Depends(get_services)):
        stopped = await svc.streams.stop_user_stream(user_id)
        request.app.state.tick_handles.pop(user_id, None)
        return {"success": True, "stopped": stopped}

    @app.post("/api/broker/stream/subscribe")
    async def stream_subscribe(
        body: SymbolBody,
        user_id: str = Depends(require_active_session),
        svc: AppServices = Depends(get_services),
    ):
        sent = await svc.streams.subscribe(user_id, body.symbol, body.exchange)
        return {"success": True, "sent": sent}

    @app.post("/api/broker/stream/unsubscribe")
    async def stream_unsubscribe(
        body: SymbolBody,
        user_id: str = Depends(get_user_id),
        svc: AppServices = Depends(get_services),
    ):
        sent = await svc.streams.unsubscribe(user_id, body.symbol, body.exchange)
        return {"success": True, "sent": sent}

    @app.get("/api/broker/stream")
    async def stream_status(request: Request, user_id: str = Depends(get_user_id), svc: AppServices = Depends(get_services)):
        return {
            "success": True,
            "stream": svc.streams.stream_info(user_id),
            "ticks": request.app.state.latest_ticks.get(user_id),
        }

    return app
