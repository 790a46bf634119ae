from .messages import (
    AgentDescriptor,
    AgentMessage,
    AgentRegister,
    AgentRegistered,
    CollectPageDataRequest,
    CollectPageDataResponse,
    Heartbeat,
    HeartbeatAck,
    HeartbeatPayload,
    JobAssigned,
    JobAssignment,
    JobCancelled,
    JobResult,
    JobResultPayload,
    PendingJobsResponse,
    RegisterResponse,
    ServerMessage,
    StatisticsPayload,
    parse_agent_message,
    parse_server_message,
)

__all__ = [
    # agent -> server
    "AgentDescriptor",
    "AgentMessage",
    "AgentRegister",
    "Heartbeat",
    "HeartbeatPayload",
    "JobResult",
    "JobResultPayload",
    "StatisticsPayload",
    "parse_agent_message",
    # server -> agent
    "AgentRegistered",
    "HeartbeatAck",
    "JobAssigned",
    "JobAssignment",
    "JobCancelled",
    "ServerMessage",
    "parse_server_message",
    # http responses
    "PendingJobsResponse",
    "RegisterResponse",
    # resource execution context
    "CollectPageDataRequest",
    "CollectPageDataResponse",
]
