"""
HTTP transport used by the BrokerGateway.

The gateway depends on the HttpTransport protocol only; AiohttpTransport is the
production implementation with a pooled, keep-alive connector.
"""
import asyncio
import json
import ssl
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import aiohttp
import certifi

from alphaforge.exceptions import BrokerConnectionError, BrokerTimeout
from alphaforge.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class TransportResponse:
    status: int
    body: Any


class HttpTransport(Protocol):
    async def send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        json_body: Optional[Any],
        timeout: float,
    ) -> TransportResponse: ...

    async def close(self) -> None: ...


class AiohttpTransport:
    """
    Pooled aiohttp transport.

    One ClientSession is created lazily and reused for every call, so TCP and
    TLS connections are kept alive between broker requests.
    """

    def __init__(self, pool_size: int = 50, pool_size_per_host: int = 10, keepalive_seconds: float = 30):
        self.pool_size = pool_size
        self.pool_size_per_host = pool_size_per_host
        self.keepalive_seconds = keepalive_seconds
        self._session: Optional[aiohttp.ClientSession] = None
        self._ssl_context: Optional[ssl.SSLContext] = None

    async def send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        json_body: Optional[Any],
        timeout: float,
    ) -> TransportResponse:
        session = self._get_session()
        try:
            async with session.request(
                method,
                url,
                headers=headers,
                json=json_body,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                text = await response.text()
                return TransportResponse(status=response.status, body=_decode_body(text))
        except asyncio.TimeoutError as e:
            raise BrokerTimeout(f"Broker request timed out after {timeout:.0f}s") from e
        except aiohttp.ClientConnectionError as e:
            raise BrokerConnectionError(f"Broker connection failed: {type(e).__name__}") from e

    async def close(self) -> None:
        """Cleanup resources."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self.pool_size,
                limit_per_host=self.pool_size_per_host,
                keepalive_timeout=self.keepalive_seconds,
                ssl=self._get_ssl_context(),
            )
            self._session = aiohttp.ClientSession(connector=connector)
            logger.debug("HTTP connection pool created", pool_size=self.pool_size)
        return self._session

    def _get_ssl_context(self) -> ssl.SSLContext:
        """Get or create reusable SSL context with certifi certificates."""
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context


def _decode_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text
