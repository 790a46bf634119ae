"""
Core types for the crawling agent.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class ConnectionState(str, Enum):
    """Connection status towards the job server"""

    OFFLINE = "offline"
    CONNECTING = "connecting"
    ONLINE = "online"
    ERROR = "error"


class JobStatus(str, Enum):
    """Job lifecycle state"""

    ASSIGNED = "assigned"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class ResourceStatus(str, Enum):
    """Pooled resource state"""

    IDLE = "idle"
    BUSY = "busy"


class ReadyState(str, Enum):
    """Readiness reported by a resource's execution context"""

    LOADING = "loading"
    COMPLETE = "complete"


class TransportMode(str, Enum):
    """How the agent talks to the job server"""

    WEBSOCKET = "websocket"
    HTTP = "http"


class InFlightJobPolicy(str, Enum):
    """What happens to in-flight jobs when the agent identity changes"""

    DROP = "drop"
    REPORT_CANCELLED = "report_cancelled"


DEFAULT_JOB_TIMEOUT_MS = 30000

NO_RESOURCE_AVAILABLE = "no resource available"
TIMEOUT_REASON = "timeout"
CANCELLED_REASON = "cancelled"


def now_ms() -> int:
    return int(time.time() * 1000)


class JobOptions(BaseModel):
    """Per-job options; unknown keys are preserved"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    timeout_ms: int = Field(
        DEFAULT_JOB_TIMEOUT_MS,
        ge=1,
        validation_alias=AliasChoices("timeout_ms", "timeoutMs", "timeout"),
    )


class Job(BaseModel):
    """A search-query job assigned by the server"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    query: str
    options: JobOptions = Field(default_factory=JobOptions)
    status: JobStatus = JobStatus.ASSIGNED
    start_time: int = Field(default_factory=now_ms)
    resource_id: Optional[str] = None
    timeout_handle: Optional[asyncio.TimerHandle] = Field(None, exclude=True)

    @property
    def timeout_seconds(self) -> float:
        return self.options.timeout_ms / 1000.0

    def cancel_timeout(self) -> None:
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None

    def elapsed_ms(self, now: Optional[int] = None) -> int:
        return (now if now is not None else now_ms()) - self.start_time


class Resource(BaseModel):
    """A reusable execution slot (a browser page)"""

    id: str
    status: ResourceStatus = ResourceStatus.IDLE
    assigned_job_id: Optional[str] = None

    @property
    def is_idle(self) -> bool:
        return self.status == ResourceStatus.IDLE


class AgentStatistics(BaseModel):
    """Process-wide job counters, reset only on identity change"""

    model_config = ConfigDict(populate_by_name=True)

    total_jobs: int = Field(0, alias="totalJobs")
    completed_jobs: int = Field(0, alias="completedJobs")
    failed_jobs: int = Field(0, alias="failedJobs")

    def record_outcome(self, success: bool) -> None:
        if success:
            self.completed_jobs += 1
        else:
            self.failed_jobs += 1

    def reset(self) -> None:
        self.total_jobs = 0
        self.completed_jobs = 0
        self.failed_jobs = 0

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class JobOutcome(BaseModel):
    """Terminal outcome of a job, as reported to the server"""

    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    processing_time_ms: Optional[int] = None
