"""
Control-plane message handling.

A local UI collaborator talks to a running agent with small typed
messages; every message gets a dict response. ``ControlServer`` exposes
the control plane as a JSON endpoint (``POST /control``) on a local port.
"""

import logging
from typing import Any, Dict, Optional

from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.exceptions import MessageValidationError
from .coordinator import AgentCoordinator

logger = logging.getLogger(__name__)

GET_AGENT_STATUS = "GET_AGENT_STATUS"
FORCE_RECONNECT = "FORCE_RECONNECT"
UPDATE_AGENT_ALIAS = "UPDATE_AGENT_ALIAS"
CHANGE_AGENT_ID = "CHANGE_AGENT_ID"

UNKNOWN_MESSAGE_TYPE = "unknown message type"


class UpdateAliasRequest(BaseModel):
    alias: Optional[str] = None


class ChangeAgentIdRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_id: str = Field(..., alias="newId", min_length=1)
    alias: Optional[str] = None


class ControlPlane:
    """Answers control-plane messages on behalf of a coordinator"""

    def __init__(self, coordinator: AgentCoordinator):
        self.coordinator = coordinator

    async def handle(self, message: Dict[str, Any]) -> Dict[str, Any]:
        message_type = message.get("type") if isinstance(message, dict) else None
        logger.debug(f"Control message {message_type}")

        try:
            if message_type == GET_AGENT_STATUS:
                return {"success": True, **self.coordinator.get_status()}

            if message_type == FORCE_RECONNECT:
                scheduled = await self.coordinator.force_reconnect()
                return {"success": True, "scheduled": scheduled}

            if message_type == UPDATE_AGENT_ALIAS:
                request = self._parse(UpdateAliasRequest, message)
                agent_id = await self.coordinator.update_alias(request.alias)
                return {"success": True, "agentId": agent_id}

            if message_type == CHANGE_AGENT_ID:
                request = self._parse(ChangeAgentIdRequest, message)
                agent_id = await self.coordinator.on_identity_change_requested(request.new_id, request.alias)
                return {"success": True, "agentId": agent_id}

        except (MessageValidationError, ValueError) as e:
            logger.warning(f"Rejected {message_type}: {e}")
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.error(f"Failed to handle {message_type}: {e}")
            return {"success": False, "error": str(e)}

        return {"success": False, "error": UNKNOWN_MESSAGE_TYPE}

    @staticmethod
    def _parse(model: Any, message: Dict[str, Any]) -> Any:
        try:
            return model.model_validate(message)
        except ValidationError as e:
            raise MessageValidationError(f"Invalid {message.get('type')} message: {e.error_count()} errors") from e


class ControlServer:
    """Serves a control plane over HTTP on a local port"""

    def __init__(self, plane: ControlPlane, host: str = "127.0.0.1", port: int = 8790):
        self.plane = plane
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/control", self._handle)
        return app

    async def _handle(self, request: web.Request) -> web.Response:
        try:
            message = await request.json()
        except ValueError:
            return web.json_response({"success": False, "error": "body must be JSON"}, status=400)
        response = await self.plane.handle(message)
        return web.json_response(response)

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"Control endpoint listening on http://{self.host}:{self.port}/control")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
