from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def _lift_payload(data: Any) -> Any:
    # Servers send assignment fields either inline or nested under "payload"
    if isinstance(data, dict) and isinstance(data.get("payload"), dict):
        merged = {k: v for k, v in data.items() if k != "payload"}
        merged.update(data["payload"])
        return merged
    return data


# Agent -> server


class AgentDescriptor(WireModel):
    name: str
    capabilities: List[str] = Field(default_factory=list)
    max_concurrent_jobs: int = Field(3, ge=1)
    supported_sites: List[str] = Field(default_factory=list)
    version: str


class StatisticsPayload(WireModel):
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0


class HeartbeatPayload(WireModel):
    timestamp: int
    current_jobs: List[str] = Field(default_factory=list)
    statistics: StatisticsPayload = Field(default_factory=StatisticsPayload)


class JobResultPayload(WireModel):
    job_id: str
    success: bool
    status: Literal["completed", "failed"]
    result: Optional[Any] = None
    error: Optional[str] = None
    processing_time: int
    timestamp: int


class AgentRegister(WireModel):
    type: Literal["AGENT_REGISTER"] = "AGENT_REGISTER"
    agent_id: str
    payload: AgentDescriptor
    timestamp: int


class Heartbeat(WireModel):
    type: Literal["HEARTBEAT"] = "HEARTBEAT"
    agent_id: str
    timestamp: int
    current_jobs: List[str] = Field(default_factory=list)
    statistics: StatisticsPayload = Field(default_factory=StatisticsPayload)

    def heartbeat_payload(self) -> HeartbeatPayload:
        return HeartbeatPayload(timestamp=self.timestamp, current_jobs=self.current_jobs, statistics=self.statistics)


class JobResult(WireModel):
    type: Literal["JOB_RESULT"] = "JOB_RESULT"
    agent_id: str
    payload: JobResultPayload


AgentMessage = Annotated[Union[AgentRegister, Heartbeat, JobResult], Field(discriminator="type")]


# Server -> agent


class JobAssignment(WireModel):
    job_id: str = Field(..., min_length=1)
    query: str
    options: Dict[str, Any] = Field(default_factory=dict)


class AgentRegistered(WireModel):
    type: Literal["AGENT_REGISTERED"]
    agent_id: Optional[str] = None
    server_id: Optional[str] = None


class JobAssigned(JobAssignment):
    type: Literal["JOB_ASSIGNED"]

    @model_validator(mode="before")
    @classmethod
    def lift_payload(cls, data: Any) -> Any:
        return _lift_payload(data)

    def assignment(self) -> JobAssignment:
        return JobAssignment(job_id=self.job_id, query=self.query, options=self.options)


class JobCancelled(WireModel):
    type: Literal["JOB_CANCELLED"]
    job_id: str
    reason: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def lift_payload(cls, data: Any) -> Any:
        return _lift_payload(data)


class HeartbeatAck(WireModel):
    type: Literal["HEARTBEAT_ACK"]


ServerMessage = Annotated[
    Union[AgentRegistered, JobAssigned, JobCancelled, HeartbeatAck],
    Field(discriminator="type"),
]

_server_message_adapter: TypeAdapter[Any] = TypeAdapter(ServerMessage)
_agent_message_adapter: TypeAdapter[Any] = TypeAdapter(AgentMessage)


def parse_server_message(raw: Any) -> Union[AgentRegistered, JobAssigned, JobCancelled, HeartbeatAck]:
    """
    Validate an inbound server frame.

    Frames arrive either bare (``{"type": ...}``) or wrapped in a
    ``{"response": {...}}`` envelope. Unknown types raise ``ValidationError``.
    """
    if isinstance(raw, dict) and isinstance(raw.get("response"), dict):
        raw = raw["response"]
    return _server_message_adapter.validate_python(raw)


def parse_agent_message(raw: Any) -> Union[AgentRegister, Heartbeat, JobResult]:
    return _agent_message_adapter.validate_python(raw)


class PendingJobsResponse(WireModel):
    jobs: List[Dict[str, Any]] = Field(default_factory=list)


class RegisterResponse(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    agent_id: Optional[str] = None
    server_id: Optional[str] = None


# Coordinator <-> resource execution context


class CollectPageDataRequest(WireModel):
    type: Literal["COLLECT_PAGE_DATA"] = "COLLECT_PAGE_DATA"
    job_id: str


class CollectPageDataResponse(WireModel):
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
