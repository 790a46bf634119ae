"""
Resource pool components for the crawling agent.

Provides the bounded pool of reusable execution resources and the hosts
that supply them:

- ResourcePool: Owns resource idle/busy state, replacement and health sweeps
- ResourceHost: Interface to the environment that provides resources
- PlaywrightHost: Chromium pages driven through Playwright
- InMemoryHost: Scriptable in-process host for tests and dry runs
"""

from ..config.settings import AgentSettings
from .host import BLANK_URL, InMemoryHost, ResourceHost
from .playwright_host import PlaywrightHost
from .resource_pool import POOL_IDS_KEY, ResourcePool

__all__ = [
    "BLANK_URL",
    "InMemoryHost",
    "PlaywrightHost",
    "POOL_IDS_KEY",
    "ResourceHost",
    "ResourcePool",
    "create_host",
]


def create_host(settings: AgentSettings, kind: str = "browser") -> ResourceHost:
    """
    Factory function to create the resource host.

    Args:
        settings: AgentSettings instance
        kind: "browser" for Playwright pages, "memory" for the in-process host

    Returns:
        PlaywrightHost or InMemoryHost
    """
    if kind == "memory":
        return InMemoryHost()
    return PlaywrightHost(settings)
