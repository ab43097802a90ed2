"""
Realtime Connectors - websocket connection factories.

The transport only needs send/receive/close on a text connection, so the
socket library stays behind the Connector protocol. The default connector
uses aiohttp's websocket client.
"""

import asyncio
from typing import Optional, Protocol

import aiohttp
import structlog

logger = structlog.get_logger()


class Connection(Protocol):
    async def send(self, text: str) -> None:
        ...

    async def receive(self) -> Optional[str]:
        """Next text frame, or None once the connection has closed."""
        ...

    async def close(self) -> None:
        ...


class Connector(Protocol):
    async def connect(self, url: str, timeout: float) -> Connection:
        ...

    async def close(self) -> None:
        """Release resources shared by the connections it opened."""
        ...


class AiohttpConnection:
    """Connection over an aiohttp ClientWebSocketResponse."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse):
        self._ws = ws

    async def send(self, text: str) -> None:
        await self._ws.send_str(text)

    async def receive(self) -> Optional[str]:
        msg = await self._ws.receive()
        if msg.type == aiohttp.WSMsgType.TEXT:
            return msg.data
        if msg.type == aiohttp.WSMsgType.BINARY:
            return msg.data.decode("utf-8")
        if msg.type == aiohttp.WSMsgType.ERROR:
            logger.warning("realtime_socket_error", error=str(self._ws.exception()))
        return None

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()


class AiohttpConnector:
    """Opens websocket connections with a shared aiohttp ClientSession."""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, headers: Optional[dict] = None):
        self._session = session
        self._owns_session = session is None
        self.headers = headers or {}

    async def connect(self, url: str, timeout: float) -> Connection:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        ws = await asyncio.wait_for(
            self._session.ws_connect(url, headers=self.headers, autoping=True),
            timeout,
        )
        return AiohttpConnection(ws)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
