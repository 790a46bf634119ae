"""
Logging utilities for the crawling agent.

stdlib logging carries every module's ``logger.info(..., extra=...)`` calls;
structlog renders them as JSON lines in deployments or as console output
during local runs.
"""

import logging
import sys
from typing import Any, List, Optional

import structlog

_SHARED_PROCESSORS: List[Any] = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
]


def setup_agent_logger(name: str, level: str = "INFO", json_logs: bool = True) -> structlog.BoundLogger:
    """
    Configure logging for the agent process and return a named logger.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_logs: JSON lines when True, human readable console output otherwise
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    if json_logs:
        renderers: List[Any] = [
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=_SHARED_PROCESSORS + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger(name)


def get_agent_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


class AgentLoggerAdapter:
    """
    Emits job lifecycle and connection events bound to the agent id.

    The id changes on identity switches, so ``rebind`` rebuilds the bound
    logger from the unbound base.
    """

    def __init__(self, logger: structlog.BoundLogger, agent_id: Optional[str] = None):
        self._base = logger
        self.agent_id = agent_id
        self.logger = logger.bind(agent_id=agent_id)

    def rebind(self, agent_id: str) -> None:
        self.agent_id = agent_id
        self.logger = self._base.bind(agent_id=agent_id)

    def log_job_assigned(self, job_id: str, query: str, **kwargs: Any) -> None:
        self.logger.info("job_assigned", job_id=job_id, query=query, **kwargs)

    def log_job_completed(self, job_id: str, processing_time_ms: int, **kwargs: Any) -> None:
        self.logger.info("job_completed", job_id=job_id, processing_time_ms=processing_time_ms, **kwargs)

    def log_job_failed(self, job_id: str, error: str, **kwargs: Any) -> None:
        self.logger.error("job_failed", job_id=job_id, error=error, **kwargs)

    def log_job_dropped(self, job_id: str, reason: str, **kwargs: Any) -> None:
        self.logger.warning("job_dropped", job_id=job_id, reason=reason, **kwargs)

    def log_connection_state(self, state: str, **kwargs: Any) -> None:
        self.logger.info("connection_state", state=state, **kwargs)
