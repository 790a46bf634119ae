"""
Custom exceptions for the crawling agent.
"""

from typing import Optional


class AgentError(Exception):
    """Base exception for all agent errors."""

    pass


class TransportError(AgentError):
    """Registration or send to the job server failed. Recovered by scheduled retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ResourceUnavailable(AgentError):
    """The resource pool has no idle resource. Fails the single job."""

    pass


class ResourceDefunct(AgentError):
    """A resource handle no longer exists in the host."""

    def __init__(self, resource_id: str):
        super().__init__(f"Resource {resource_id} no longer exists")
        self.resource_id = resource_id


class JobTimeout(AgentError):
    """A job exceeded its timeout."""

    def __init__(self, job_id: str, timeout_ms: int):
        super().__init__(f"Job {job_id} timed out after {timeout_ms}ms")
        self.job_id = job_id
        self.timeout_ms = timeout_ms


class ExtractionFailure(AgentError):
    """The resource execution context returned a failure or no response."""

    pass


class MessageValidationError(AgentError):
    """An inbound or outbound message does not match the schema."""

    pass


class ConfigurationError(AgentError):
    """Configuration-related errors."""

    pass
