"""
Broker gateway: the single path to the ICICI Breeze HTTP API.

Every call passes, in order, through:
  1. RateLimiter (per user, fail fast, no network)
  2. Session resolution (SessionCache -> CredentialStore)
  3. Checksum signing (skipped for the customer-details handshake)
  4. CircuitBreaker.execute(RetryPolicy.run(http call))
  5. Status mapping to typed errors; 401 also invalidates the session
"""
import time
import uuid
from typing import Any, Dict, Optional
from urllib.parse import quote

import structlog

from alphaforge import constants
from alphaforge.domain.models import BrokerSession
from alphaforge.exceptions import (
    AccessDenied,
    BrokerAPIError,
    BrokerTimeout,
    InvalidSession,
    SessionExpiredRemote,
    UpstreamUnavailable,
)
from alphaforge.gateway.transport import HttpTransport, TransportResponse
from alphaforge.monitoring.logger import get_logger
from alphaforge.session.service import SessionService
from alphaforge.utils.checksum import calculate_checksum, get_timestamp
from alphaforge.utils.circuit_breaker import CircuitBreaker
from alphaforge.utils.rate_limiter import RateLimiter
from alphaforge.utils.retry import RetryPolicy

logger = get_logger(__name__)

MAX_ERROR_DETAIL = 200


def is_customer_details(endpoint: str) -> bool:
    return "customerdetails" in endpoint.lower()


def build_login_url(login_url: str, api_key: str) -> str:
    """Broker login page for the OAuth-like handshake."""
    return f"{login_url}?api_key={quote(api_key, safe='')}"


class BrokerGateway:
    """Resilient, signed access to the broker API for all users."""

    def __init__(
        self,
        sessions: SessionService,
        transport: HttpTransport,
        rate_limiter: RateLimiter,
        circuit_breaker: CircuitBreaker,
        retry_policy: RetryPolicy,
        base_url: str = constants.BREEZE_BASE_URL,
        login_url: str = constants.BREEZE_LOGIN_URL,
        timeout_seconds: float = constants.DEFAULT_API_TIMEOUT,
    ):
        self.sessions = sessions
        self.transport = transport
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.retry_policy = retry_policy
        self.base_url = base_url.rstrip("/")
        self._login_url = login_url
        self.timeout_seconds = timeout_seconds

    async def request(
        self,
        user_id: str,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Send one broker API call on behalf of ``user_id``.

        Returns:
            Decoded response body

        Raises:
            RateLimitExceeded, NotConnected, InvalidSession, SessionLocked:
                before any network call
            CircuitOpenError: breaker open, no network call
            SessionExpiredRemote: broker answered 401 (session invalidated)
            AccessDenied: broker answered 403
            BrokerTimeout / UpstreamUnavailable / BrokerConnectionError:
                transient failure after retries were exhausted
            BrokerAPIError: any other broker rejection
        """
        method = method.upper()
        payload = payload or {}

        self.rate_limiter.check_or_raise(user_id)
        session = await self.sessions.get_session_or_raise(user_id)

        request_id = str(uuid.uuid4())
        special = is_customer_details(endpoint)
        if special:
            headers = {"Content-Type": "application/json", "X-Request-ID": request_id}
            body = {"SessionToken": payload.get("SessionToken"), "AppKey": session.api_key}
        else:
            headers = self._signed_headers(session, method, payload, request_id)
            body = payload

        url = f"{self.base_url}{endpoint}"

        async def send_once() -> TransportResponse:
            response = await self.transport.send(method, url, headers, body, self.timeout_seconds)
            _raise_for_transient(response)
            return response

        with structlog.contextvars.bound_contextvars(request_id=request_id, user_id=user_id):
            start = time.monotonic()
            logger.debug("Broker request", method=method, endpoint=endpoint)

            response = await self.circuit_breaker.execute(
                lambda: self.retry_policy.run(send_once, description=f"{method} {endpoint}")
            )

            if response.status == 401:
                await self.sessions.invalidate(user_id)
                logger.warning("Broker session rejected (401), session invalidated", endpoint=endpoint)
                raise SessionExpiredRemote(user_id)

            result = _check_response(response, strict_status=special)
            logger.debug(
                "Broker request OK",
                method=method,
                endpoint=endpoint,
                elapsed_ms=round((time.monotonic() - start) * 1000, 1),
            )
            return result

    def _signed_headers(
        self,
        session: BrokerSession,
        method: str,
        payload: Dict[str, Any],
        request_id: str,
    ) -> Dict[str, str]:
        if not session.session_token:
            raise InvalidSession("Broker session token missing. Please log in to your broker account.")

        timestamp = get_timestamp()
        # GET bodies are not part of the signature
        checksum_payload = {} if method == "GET" else payload
        checksum = calculate_checksum(timestamp, checksum_payload, session.api_secret)
        return {
            "Content-Type": "application/json",
            "X-Timestamp": timestamp,
            "X-AppKey": session.api_key,
            "X-SessionToken": session.session_token,
            "X-Checksum": f"token {checksum}",
            "X-Request-ID": request_id,
        }

    # ========== ENDPOINT HELPERS ==========

    def login_url(self, api_key: str) -> str:
        return build_login_url(self._login_url, api_key)

    async def customer_details(self, user_id: str, api_session: str) -> Dict[str, Any]:
        """Exchange the one-time login ``apisession`` for customer details and a session token."""
        return await self.request(
            user_id, "GET", constants.CUSTOMER_DETAILS_ENDPOINT, {"SessionToken": api_session}
        )

    async def get_quotes(
        self,
        user_id: str,
        stock_code: str,
        exchange_code: str = constants.DEFAULT_EXCHANGE,
        product_type: str = "cash",
        expiry_date: Optional[str] = None,
        right: Optional[str] = None,
        strike_price: Optional[str] = None,
    ) -> Any:
        payload: Dict[str, Any] = {
            "stock_code": stock_code,
            "exchange_code": exchange_code,
            "product_type": product_type,
        }
        if expiry_date:
            payload["expiry_date"] = expiry_date
        if right:
            payload["right"] = right
        if strike_price:
            payload["strike_price"] = strike_price
        return await self.request(user_id, "GET", constants.QUOTES_ENDPOINT, payload)

    async def place_order(self, user_id: str, order: Dict[str, Any]) -> Any:
        return await self.request(user_id, "POST", constants.ORDER_ENDPOINT, order)

    async def get_order_book(
        self,
        user_id: str,
        exchange_code: str = constants.DEFAULT_EXCHANGE,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
    ) -> Any:
        payload: Dict[str, Any] = {"exchange_code": exchange_code}
        if from_date:
            payload["from_date"] = from_date
        if to_date:
            payload["to_date"] = to_date
        return await self.request(user_id, "GET", constants.ORDER_ENDPOINT, payload)

    async def get_portfolio_holdings(self, user_id: str, exchange_code: str = constants.DEFAULT_EXCHANGE) -> Any:
        return await self.request(
            user_id, "GET", constants.PORTFOLIO_HOLDINGS_ENDPOINT, {"exchange_code": exchange_code}
        )

    async def get_portfolio_positions(self, user_id: str) -> Any:
        return await self.request(user_id, "GET", constants.PORTFOLIO_POSITIONS_ENDPOINT)

    def get_status(self) -> Dict[str, Any]:
        return {"circuit_breaker": self.circuit_breaker.get_state_info()}

    async def close(self) -> None:
        await self.transport.close()


def _raise_for_transient(response: TransportResponse) -> None:
    """Raise retryable errors inside the retry loop; everything else is decided once."""
    if response.status == 408:
        raise BrokerTimeout("Broker returned 408", status=408)
    if response.status >= 500:
        raise UpstreamUnavailable(
            f"Broker unavailable (HTTP {response.status}), try again later", status=response.status
        )


def _error_detail(body: Any) -> str:
    if isinstance(body, dict):
        detail = body.get("Error") or body.get("error") or body.get("message") or ""
    else:
        detail = ""
    return str(detail)[:MAX_ERROR_DETAIL]


def _check_response(response: TransportResponse, strict_status: bool = False) -> Any:
    status = response.status
    body = response.body

    if status == 403:
        raise AccessDenied(_error_detail(body))
    if not 200 <= status < 300:
        detail = _error_detail(body) or "Unknown"
        raise BrokerAPIError(f"Broker API error (HTTP {status}): {detail}", status=status)

    # The broker reports domain errors inside 2xx bodies
    embedded = body.get("Status") if isinstance(body, dict) else None
    if strict_status:
        if embedded != constants.BROKER_STATUS_OK:
            raise BrokerAPIError(f"Customer details error: {_error_detail(body) or 'Unknown'}", status=embedded)
    elif embedded and embedded != constants.BROKER_STATUS_OK:
        raise BrokerAPIError(f"Broker API error: {_error_detail(body) or 'Unknown'}", status=embedded)
    return body
