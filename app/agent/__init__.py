"""
Distributed Crawling Agent

A browser-based crawling agent that registers with a central job server,
leases search-query jobs, executes them in a bounded pool of reusable pages
and reports one terminal result per job.
"""

from .utils.logging import setup_agent_logger

__version__ = "0.1.0"
__all__ = ["setup_agent_logger"]
