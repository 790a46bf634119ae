"""
Transport interface towards the job server.

Both transports share the HTTP session used for registration-independent
calls (identity deletion) and translate the agent's outbound message
models into their wire shape.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Union
from urllib.parse import quote

import aiohttp
from aiohttp import ClientError, ClientTimeout

from ...schema.messages import AgentDescriptor, AgentRegister, Heartbeat, JobResult, RegisterResponse
from ..config.settings import AgentSettings
from ..core.exceptions import TransportError
from ..core.types import TransportMode

logger = logging.getLogger(__name__)

OutboundMessage = Union[AgentRegister, Heartbeat, JobResult]

# Close code of a clean websocket shutdown
NORMAL_CLOSURE = 1000


class Transport(ABC):
    """
    Channel between the agent and the job server.

    Every failure surfaces as ``TransportError``.
    """

    mode: TransportMode

    @abstractmethod
    async def open(self) -> None:
        pass

    @abstractmethod
    async def register(self, agent_id: str, descriptor: AgentDescriptor) -> RegisterResponse:
        """Announce the agent and its capabilities"""

    @abstractmethod
    async def send(self, message: OutboundMessage) -> None:
        pass

    async def fetch_pending_jobs(self, agent_id: str) -> List[Dict[str, Any]]:
        """Raw job assignments; each is validated by the consumer"""
        raise TransportError(f"{self.mode.value} transport does not support polling")

    def messages(self) -> AsyncIterator[Any]:
        """Inbound server frames, for duplex transports"""
        raise TransportError(f"{self.mode.value} transport does not push messages")

    @property
    def close_code(self) -> Optional[int]:
        return None

    @abstractmethod
    async def delete_agent(self, agent_id: str) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class AiohttpTransport(Transport):
    """Shared aiohttp session handling for the concrete transports"""

    def __init__(self, settings: AgentSettings):
        self.settings = settings
        prefix = settings.api_prefix.strip("/")
        self.base_url = settings.server_url.rstrip("/") + (f"/{prefix}" if prefix else "")
        self._session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = ClientTimeout(
                total=self.settings.request_timeout_seconds,
                connect=self.settings.connect_timeout_seconds,
            )
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"Content-Type": "application/json"},
                raise_for_status=False,
            )
            logger.debug("Created new HTTP session")
        return self._session

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        session = await self._ensure_session()
        url = self._url(path)
        try:
            async with session.request(method, url, json=body) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise TransportError(
                        f"{method} {url} failed with HTTP {response.status}: {text[:200]}",
                        status_code=response.status,
                    )
                if response.content_type != "application/json":
                    return {}
                data = await response.json()
                return data if isinstance(data, dict) else {}
        except TransportError:
            raise
        except (ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

    async def delete_agent(self, agent_id: str) -> None:
        await self._request("DELETE", f"agent/{quote(agent_id, safe='')}")

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
