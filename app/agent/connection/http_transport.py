"""
Polling transport over plain HTTP.
"""

import logging
from typing import Any, Dict, List

from pydantic import ValidationError

from ...schema.messages import AgentDescriptor, Heartbeat, PendingJobsResponse, RegisterResponse
from ..core.exceptions import MessageValidationError
from ..core.types import TransportMode
from .transport import AiohttpTransport, OutboundMessage

logger = logging.getLogger(__name__)


class HttpTransport(AiohttpTransport):
    """
    Request/response transport. Jobs are pulled with ``fetch_pending_jobs``;
    heartbeats and results are posted to the message endpoint.
    """

    mode = TransportMode.HTTP

    async def open(self) -> None:
        await self._ensure_session()

    async def register(self, agent_id: str, descriptor: AgentDescriptor) -> RegisterResponse:
        data = await self._request(
            "POST",
            "agent/register",
            {"agentId": agent_id, "payload": descriptor.to_wire()},
        )
        response = RegisterResponse.model_validate(data)
        logger.info(f"Registered agent {agent_id}", extra={"agent_id": agent_id, "server_id": response.server_id})
        return response

    async def send(self, message: OutboundMessage) -> None:
        if isinstance(message, Heartbeat):
            body = {
                "agentId": message.agent_id,
                "type": message.type,
                "payload": message.heartbeat_payload().to_wire(),
            }
        else:
            body = message.to_wire()
        await self._request("POST", "agent/message", body)

    async def fetch_pending_jobs(self, agent_id: str) -> List[Dict[str, Any]]:
        data = await self._request("POST", "agent/get-pending-jobs", {"agentId": agent_id})
        try:
            return PendingJobsResponse.model_validate(data).jobs
        except ValidationError as e:
            raise MessageValidationError(f"Invalid pending jobs response: {e}") from e
