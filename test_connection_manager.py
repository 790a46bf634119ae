"""Tests for the connection state machine, heartbeats, polling and reconnects."""

import asyncio
from typing import Any, AsyncIterator, Callable, Dict, List, Tuple

import pytest

from app.agent.config.settings import AgentSettings
from app.agent.connection.manager import ConnectionManager
from app.agent.core.types import AgentStatistics, ConnectionState, JobOutcome
from app.schema.messages import JobResult
from conftest import FakeTransport


class Recorder:
    def __init__(self):
        self.assigned: List[Dict[str, Any]] = []
        self.cancelled: List[Dict[str, Any]] = []
        self.transitions: List[Tuple[ConnectionState, ConnectionState]] = []
        self.statistics = AgentStatistics(total_jobs=2, completed_jobs=1, failed_jobs=0)
        self.job_ids = ["job-1"]

    async def on_job_assigned(self, payload: Dict[str, Any]) -> None:
        self.assigned.append(payload)

    async def on_job_cancelled(self, payload: Dict[str, Any]) -> None:
        self.cancelled.append(payload)

    def heartbeat_state(self):
        return list(self.job_ids), self.statistics

    def on_state_change(self, old: ConnectionState, new: ConnectionState) -> None:
        self.transitions.append((old, new))


def build_manager(settings: AgentSettings, transport: FakeTransport, recorder: Recorder) -> ConnectionManager:
    manager = ConnectionManager(
        settings,
        transport,
        on_job_assigned=recorder.on_job_assigned,
        on_job_cancelled=recorder.on_job_cancelled,
        heartbeat_state=recorder.heartbeat_state,
        on_state_change=recorder.on_state_change,
    )
    manager.set_identity("abc1")
    return manager


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
async def manager(settings, transport, recorder) -> AsyncIterator[ConnectionManager]:
    """Provide a polling-transport manager with identity abc1."""
    manager = build_manager(settings, transport, recorder)
    yield manager
    await manager.disconnect()


@pytest.fixture
async def ws_manager(settings_factory: Callable[..., AgentSettings], ws_transport, recorder):
    """Provide a websocket-transport manager with identity abc1."""
    manager = build_manager(settings_factory(transport="websocket"), ws_transport, recorder)
    yield manager
    await manager.disconnect()


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_registers_and_goes_online(self, manager: ConnectionManager, transport: FakeTransport):
        assert await manager.connect() is True

        assert manager.state == ConnectionState.ONLINE
        assert manager.server_id == "server-1"
        assert transport.registrations == ["abc1"]
        descriptor = transport.descriptors[0]
        assert descriptor.max_concurrent_jobs == 3
        assert descriptor.to_wire()["maxConcurrentJobs"] == 3

    @pytest.mark.asyncio
    async def test_connect_is_a_noop_when_online(self, manager: ConnectionManager, transport: FakeTransport):
        await manager.connect()
        assert await manager.connect() is True
        assert transport.opened == 1

    @pytest.mark.asyncio
    async def test_connect_requires_identity(self, settings, transport, recorder):
        manager = ConnectionManager(
            settings,
            transport,
            on_job_assigned=recorder.on_job_assigned,
            on_job_cancelled=recorder.on_job_cancelled,
            heartbeat_state=recorder.heartbeat_state,
        )
        assert await manager.connect() is False
        assert transport.opened == 0

    @pytest.mark.asyncio
    async def test_failed_connect_schedules_reconnect(
        self, manager: ConnectionManager, transport: FakeTransport, wait_until
    ):
        transport.fail_open = 1

        assert await manager.connect() is False
        assert manager.state == ConnectionState.OFFLINE
        assert manager.reconnect_pending

        await wait_until(lambda: manager.state == ConnectionState.ONLINE)
        assert transport.opened == 2
        assert manager.connection_attempts == 0

    @pytest.mark.asyncio
    async def test_attempt_ceiling_ends_in_error(self, settings_factory, transport, recorder, wait_until):
        manager = build_manager(settings_factory(max_connection_attempts=3), transport, recorder)
        transport.fail_open = 100

        await manager.connect()
        await wait_until(lambda: manager.state == ConnectionState.ERROR)

        assert transport.opened == 3
        assert not manager.reconnect_pending

        # A manual reconnect resets the counter
        transport.fail_open = 0
        assert await manager.force_reconnect() is True
        await wait_until(lambda: manager.state == ConnectionState.ONLINE)
        await manager.disconnect()


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_heartbeat_carries_jobs_and_statistics(self, manager: ConnectionManager, transport: FakeTransport):
        await manager.connect()
        await manager.stop_timers()

        assert await manager.heartbeat() is True

        heartbeat = transport.heartbeats()[-1]
        assert heartbeat.agent_id == "abc1"
        assert heartbeat.current_jobs == ["job-1"]
        assert heartbeat.statistics.total_jobs == 2
        assert heartbeat.heartbeat_payload().to_wire()["statistics"]["completedJobs"] == 1

    @pytest.mark.asyncio
    async def test_failure_goes_offline_with_one_reconnect(
        self, settings_factory, transport: FakeTransport, recorder: Recorder
    ):
        manager = build_manager(
            settings_factory(heartbeat_failure_reconnect_delay_seconds=5.0), transport, recorder
        )
        await manager.connect()
        await manager.stop_timers()
        transport.fail_sends = True

        assert await manager.heartbeat() is False
        assert await manager.heartbeat() is False

        assert manager.state == ConnectionState.OFFLINE
        assert manager.reconnect_pending
        assert manager.stats["reconnects_scheduled"] == 1

        # Recovery while offline flips back and cancels the pending reconnect
        transport.fail_sends = False
        assert await manager.heartbeat() is True
        assert manager.state == ConnectionState.ONLINE
        assert not manager.reconnect_pending
        await manager.disconnect()


class TestPolling:
    @pytest.mark.asyncio
    async def test_poll_dispatches_jobs_then_heartbeats(
        self, manager: ConnectionManager, transport: FakeTransport, recorder: Recorder
    ):
        await manager.connect()
        await manager.stop_timers()
        transport.pending_jobs = [{"jobId": "job-7", "query": "lamp", "options": {}}]
        sent_before = len(transport.heartbeats())

        await manager.poll()

        assert recorder.assigned == [{"jobId": "job-7", "query": "lamp", "options": {}}]
        assert len(transport.heartbeats()) == sent_before + 1

    @pytest.mark.asyncio
    async def test_poll_while_offline_only_heartbeats(
        self, manager: ConnectionManager, transport: FakeTransport, recorder: Recorder
    ):
        transport.pending_jobs = [{"jobId": "job-7", "query": "lamp"}]

        await manager.poll()

        assert transport.fetch_calls == 0
        assert recorder.assigned == []
        assert len(transport.heartbeats()) == 1

    @pytest.mark.asyncio
    async def test_poll_loop_runs_after_connect(
        self, manager: ConnectionManager, transport: FakeTransport, recorder: Recorder, wait_until
    ):
        await manager.connect()
        transport.pending_jobs = [{"jobId": "job-8", "query": "desk"}]

        await wait_until(lambda: len(recorder.assigned) == 1)
        await wait_until(lambda: len(transport.heartbeats()) >= 2)


class TestReconnectRequests:
    @pytest.mark.asyncio
    async def test_force_reconnect_does_not_stack(
        self, manager: ConnectionManager, transport: FakeTransport, wait_until
    ):
        await manager.connect()

        assert await manager.force_reconnect() is True
        assert await manager.force_reconnect() is False
        assert await manager.force_reconnect() is False

        await wait_until(lambda: manager.state == ConnectionState.ONLINE)
        assert transport.opened == 2
        assert manager.stats["reconnects_scheduled"] == 1

    @pytest.mark.asyncio
    async def test_disconnect_stops_reconnects(self, manager: ConnectionManager, transport: FakeTransport):
        transport.fail_open = 1
        await manager.connect()
        assert manager.reconnect_pending

        await manager.disconnect()

        assert not manager.reconnect_pending
        assert manager.state == ConnectionState.OFFLINE

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_attempt(self, manager: ConnectionManager, transport: FakeTransport):
        transport.register_delay = 0.02

        results = await asyncio.gather(manager.connect(), manager.connect())

        assert results == [True, True]
        assert transport.opened == 1
        assert transport.registrations == ["abc1"]

    @pytest.mark.asyncio
    async def test_disconnect_abandons_in_flight_attempt(
        self, manager: ConnectionManager, transport: FakeTransport, wait_until
    ):
        transport.register_delay = 0.05
        transport.fail_registers = 1
        attempt = asyncio.create_task(manager.connect())
        await wait_until(lambda: transport.registrations == ["abc1"])

        await manager.disconnect()

        assert await attempt is False
        assert not manager.connecting
        assert not manager.reconnect_pending
        assert manager.state == ConnectionState.OFFLINE
        assert manager.stats["connect_failures"] == 0

        manager.set_identity("alias_xy12")
        assert await manager.connect() is True
        assert transport.registrations == ["abc1", "alias_xy12"]
        assert manager.state == ConnectionState.ONLINE

    @pytest.mark.asyncio
    async def test_delete_agent_is_best_effort(self, manager: ConnectionManager, transport: FakeTransport):
        assert await manager.delete_agent("old1") is True
        transport.fail_delete = True
        assert await manager.delete_agent("old2") is False
        assert transport.deleted == ["old1"]


class TestReporting:
    @pytest.mark.asyncio
    async def test_report_result_is_sent_in_background(self, manager: ConnectionManager, transport: FakeTransport):
        manager.report_result("job-1", JobOutcome(success=True, data={"html": "<p>"}, processing_time_ms=12))
        await manager.drain()

        results = transport.results()
        assert len(results) == 1
        wire = results[0].to_wire()
        assert wire["type"] == "JOB_RESULT"
        assert wire["agentId"] == "abc1"
        assert wire["payload"]["jobId"] == "job-1"
        assert wire["payload"]["status"] == "completed"
        assert wire["payload"]["processingTime"] == 12
        assert wire["payload"]["result"] == {"html": "<p>"}

    @pytest.mark.asyncio
    async def test_failed_report_is_logged_not_retried(self, manager: ConnectionManager, transport: FakeTransport):
        transport.fail_sends = True

        manager.report_result("job-1", JobOutcome(success=False, error="timeout"))
        await manager.drain()

        assert manager.stats["report_failures"] == 1
        transport.fail_sends = False
        await manager.drain()
        assert transport.results() == []


class TestWebSocket:
    @pytest.mark.asyncio
    async def test_pushed_frames_are_dispatched(
        self, ws_manager: ConnectionManager, ws_transport: FakeTransport, recorder: Recorder, wait_until
    ):
        await ws_manager.connect()

        ws_transport.push({"response": {"type": "JOB_ASSIGNED", "jobId": "job-1", "query": "tv"}})
        ws_transport.push({"type": "JOB_CANCELLED", "payload": {"jobId": "job-2", "reason": "expired"}})
        ws_transport.push({"type": "AGENT_REGISTERED", "agentId": "abc1", "serverId": "server-9"})
        ws_transport.push({"type": "NOT_A_MESSAGE"})

        await wait_until(lambda: ws_manager.stats["frames_dropped"] == 1)
        assert recorder.assigned == [{"jobId": "job-1", "query": "tv", "options": {}}]
        assert recorder.cancelled[0]["jobId"] == "job-2"
        assert recorder.cancelled[0]["reason"] == "expired"
        assert ws_manager.server_id == "server-9"

    @pytest.mark.asyncio
    async def test_heartbeat_ticker(self, ws_manager: ConnectionManager, ws_transport: FakeTransport, wait_until):
        await ws_manager.connect()
        await wait_until(lambda: len(ws_transport.heartbeats()) >= 2)

    @pytest.mark.asyncio
    async def test_abnormal_close_reconnects(
        self, ws_manager: ConnectionManager, ws_transport: FakeTransport, wait_until
    ):
        await ws_manager.connect()

        ws_transport.server_close(1006)

        await wait_until(lambda: ws_transport.opened == 2 and ws_manager.state == ConnectionState.ONLINE)

    @pytest.mark.asyncio
    async def test_clean_close_does_not_reconnect(
        self, ws_manager: ConnectionManager, ws_transport: FakeTransport, wait_until
    ):
        await ws_manager.connect()

        ws_transport.server_close(1000)

        await wait_until(lambda: ws_manager.state == ConnectionState.OFFLINE)
        assert not ws_manager.reconnect_pending
        assert ws_transport.opened == 1

    @pytest.mark.asyncio
    async def test_receive_error_flips_to_error_then_reconnects(
        self, ws_manager: ConnectionManager, ws_transport: FakeTransport, recorder: Recorder, wait_until
    ):
        await ws_manager.connect()

        ws_transport.receive_error()

        await wait_until(lambda: ws_transport.opened == 2 and ws_manager.state == ConnectionState.ONLINE)
        states = [new for _, new in recorder.transitions]
        error_index = states.index(ConnectionState.ERROR)
        assert states[error_index + 1] == ConnectionState.OFFLINE


def test_job_result_status_reflects_outcome():
    """Test the status field of failure reports."""
    result = JobResult.model_validate(
        {
            "agentId": "abc1",
            "payload": {
                "jobId": "job-1",
                "success": False,
                "status": "failed",
                "error": "timeout",
                "processingTime": 100,
                "timestamp": 1,
            },
        }
    )
    assert result.payload.status == "failed"
