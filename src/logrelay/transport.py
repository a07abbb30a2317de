"""
Transports: deliver one rendered batch to the collector and report its status.

Provides:
- Transport: the protocol the dispatcher calls.
- HttpTransport: POSTs the batch with httpx.
- WebSocketTransport: sends the batch as one text frame over a persistent
  WebSocket and waits for an acknowledgement frame carrying the status,
  either a bare integer ("200") or JSON ({"status": 200}).

A transport either returns a status code or raises. The dispatcher treats
2xx as delivered and everything else (including exceptions and timeouts)
as a failed attempt to be retried.
"""

import asyncio
import json
import logging
import ssl
from typing import Any, Dict, Optional, Protocol

import httpx
import websockets

logger = logging.getLogger(__name__)

# Generic WebSocket type.
WS = Any


class Transport(Protocol):
    """Protocol for batch delivery."""

    async def send(
        self,
        content: str,
        *,
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> int:
        """Deliver content; return the collector's status code."""

    async def close(self) -> None:
        """Release connections."""


def is_accepted(status: int) -> bool:
    """True for 2xx statuses."""
    return 200 <= status < 300


class HttpTransport:
    """
    POST each batch to a URL.

    Pass an existing httpx.AsyncClient to share its connection pool; otherwise
    one is created on first use and closed by close().
    """

    def __init__(
        self,
        url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def send(
        self,
        content: str,
        *,
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> int:
        response = await self._get_client().post(
            self.url,
            content=content.encode("utf-8"),
            headers=headers or {},
            timeout=timeout,
        )
        return response.status_code

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class WebSocketTransport:
    """
    Send batches over one long-lived WebSocket.

    Headers are sent once, on the opening handshake; the connection is
    reopened lazily after any error. Batches are strictly sequential, so one
    acknowledgement frame answers the batch just sent.
    """

    def __init__(
        self,
        url: str,
        *,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self.url = url
        self._ssl_context = ssl_context
        self._ws: Optional[WS] = None
        self._lock = asyncio.Lock()

    async def _connect(self, headers: Optional[Dict[str, str]]) -> WS:
        # Only pass ssl for wss:// or when caller provides ssl_context
        use_ssl = (
            self._ssl_context
            if self._ssl_context is not None
            else (True if self.url.startswith("wss") else None)
        )
        kwargs: Dict[str, Any] = {"ping_interval": 20, "ping_timeout": 20}
        if use_ssl is not None:
            kwargs["ssl"] = use_ssl
        if headers:
            kwargs["additional_headers"] = headers
        ws = await websockets.connect(self.url, **kwargs)
        logger.info("WebSocketTransport connected to %s", self.url)
        return ws

    @staticmethod
    def _parse_ack(raw: Any) -> int:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        raw = raw.strip()
        if raw.isdigit():
            return int(raw)
        data = json.loads(raw)
        if isinstance(data, dict):
            return int(data["status"])
        return int(data)

    async def _exchange(self, content: str, headers: Optional[Dict[str, str]]) -> int:
        if self._ws is None:
            self._ws = await self._connect(headers)
        try:
            await self._ws.send(content)
            return self._parse_ack(await self._ws.recv())
        except asyncio.CancelledError:
            # Timed out: no close handshake, the peer may never answer it.
            self._abort()
            raise
        except BaseException:
            await self._drop()
            raise

    async def send(
        self,
        content: str,
        *,
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> int:
        # The dispatcher enforces the timeout by cancelling this call.
        del timeout
        async with self._lock:
            return await self._exchange(content, headers)

    def _abort(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            ws.transport.abort()
            logger.info("WebSocketTransport aborted connection to %s", self.url)

    async def _drop(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception:  # pylint: disable=broad-exception-caught
                pass

    async def close(self) -> None:
        """Close the WebSocket."""
        await self._drop()

    def is_connected(self) -> bool:
        """Check if the connection is currently open."""
        return self._ws is not None
