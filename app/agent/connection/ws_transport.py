"""
Persistent duplex transport over a websocket.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional

import aiohttp
from aiohttp import ClientError, WSMsgType

from ...schema.messages import AgentDescriptor, AgentRegister, RegisterResponse
from ..config.settings import AgentSettings
from ..core.exceptions import TransportError
from ..core.types import TransportMode, now_ms
from .transport import AiohttpTransport, OutboundMessage

logger = logging.getLogger(__name__)


class WebSocketTransport(AiohttpTransport):
    """
    Websocket transport. The server pushes assignments; heartbeats and
    results are sent as JSON frames on the same socket.
    """

    mode = TransportMode.WEBSOCKET

    def __init__(self, settings: AgentSettings):
        super().__init__(settings)
        self.websocket_url = settings.resolved_websocket_url
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    async def open(self) -> None:
        """Connect the socket, closing any socket left from a previous connection"""
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        session = await self._ensure_session()
        try:
            self._ws = await session.ws_connect(self.websocket_url)
        except (ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Failed to connect to {self.websocket_url}: {e}") from e
        logger.info(f"Websocket connected to {self.websocket_url}")

    def _socket(self) -> aiohttp.ClientWebSocketResponse:
        if self._ws is None or self._ws.closed:
            raise TransportError("websocket is not connected")
        return self._ws

    async def register(self, agent_id: str, descriptor: AgentDescriptor) -> RegisterResponse:
        # The server answers with an AGENT_REGISTERED frame on the socket
        await self.send(AgentRegister(agent_id=agent_id, payload=descriptor, timestamp=now_ms()))
        return RegisterResponse(agent_id=agent_id)

    async def send(self, message: OutboundMessage) -> None:
        ws = self._socket()
        try:
            await ws.send_json(message.to_wire())
        except (ClientError, ConnectionResetError, RuntimeError) as e:
            raise TransportError(f"Failed to send {message.type}: {e}") from e

    async def messages(self) -> AsyncIterator[Any]:
        """Yield decoded frames until the socket closes. Socket errors raise TransportError."""
        ws = self._socket()
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    yield json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning(f"Dropping non-JSON frame: {msg.data[:100]!r}")
            elif msg.type == WSMsgType.ERROR:
                raise TransportError(f"websocket error: {ws.exception()}")
            elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                break

    @property
    def close_code(self) -> Optional[int]:
        return self._ws.close_code if self._ws is not None else None

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        await super().close()
