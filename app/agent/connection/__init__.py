"""
Job server connection components for the crawling agent.

- ConnectionManager: Connection state machine, heartbeat, polling and reconnects
- HttpTransport: Request/response transport with job polling
- WebSocketTransport: Persistent duplex transport with pushed assignments
"""

from ..config.settings import AgentSettings
from ..core.types import TransportMode
from .http_transport import HttpTransport
from .manager import ConnectionManager
from .transport import NORMAL_CLOSURE, Transport
from .ws_transport import WebSocketTransport

__all__ = [
    "ConnectionManager",
    "HttpTransport",
    "NORMAL_CLOSURE",
    "Transport",
    "WebSocketTransport",
    "create_transport",
]


def create_transport(settings: AgentSettings) -> Transport:
    """
    Factory function to create the configured transport.

    Args:
        settings: AgentSettings instance

    Returns:
        WebSocketTransport or HttpTransport
    """
    if settings.transport == TransportMode.WEBSOCKET:
        return WebSocketTransport(settings)
    return HttpTransport(settings)
