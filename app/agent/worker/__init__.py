"""
Agent worker components.

This package provides the agent's job-execution side:

- AgentCoordinator: Glues pool, registry, executor and connection under one identity
- JobExecutor: Runs a job on a pooled resource with a per-job timeout
- JobRegistry: Map of in-flight jobs that decides which terminal path reports
- ControlPlane: Answers status, reconnect and identity messages from a local UI
"""

from .control import ControlPlane
from .coordinator import AgentCoordinator
from .job_executor import JobExecutor
from .job_registry import JobRegistry

__all__ = [
    "AgentCoordinator",
    "ControlPlane",
    "JobExecutor",
    "JobRegistry",
]
