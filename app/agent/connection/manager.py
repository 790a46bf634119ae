"""
Connection management towards the job server.

Owns the connection state machine (offline -> connecting -> online ->
offline/error), registration, the heartbeat ticker or the HTTP poll loop,
reconnect scheduling with backoff, and fire-and-forget result reporting.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypedDict

from pydantic import ValidationError

from ...schema.messages import (
    AgentRegistered,
    Heartbeat,
    HeartbeatAck,
    JobAssigned,
    JobCancelled,
    JobResult,
    JobResultPayload,
    StatisticsPayload,
    parse_server_message,
)
from ..config.settings import AgentSettings
from ..core.types import AgentStatistics, ConnectionState, JobOutcome, TransportMode, now_ms
from .transport import NORMAL_CLOSURE, OutboundMessage, Transport

logger = logging.getLogger(__name__)

PayloadHandler = Callable[[Dict[str, Any]], Awaitable[None]]
HeartbeatState = Callable[[], Tuple[List[str], AgentStatistics]]
StateListener = Callable[[ConnectionState, ConnectionState], None]


class StatsType(TypedDict):
    connects: int
    connect_failures: int
    reconnects_scheduled: int
    heartbeats_sent: int
    heartbeat_failures: int
    polls: int
    reports_sent: int
    report_failures: int
    frames_dropped: int


class ConnectionManager:
    """
    Maintains the agent's connection to the job server.

    At most one reconnect is pending at any time and at most one connect
    is in flight, so repeated failures or manual reconnect requests never
    stack concurrent connection attempts.
    """

    def __init__(
        self,
        settings: AgentSettings,
        transport: Transport,
        on_job_assigned: PayloadHandler,
        on_job_cancelled: PayloadHandler,
        heartbeat_state: HeartbeatState,
        on_state_change: Optional[StateListener] = None,
    ):
        """
        Initialize the connection manager.

        Args:
            settings: Agent settings (intervals, backoff, registration descriptor)
            transport: Websocket or HTTP transport
            on_job_assigned: Receives each raw job assignment payload
            on_job_cancelled: Receives each raw job cancellation payload
            heartbeat_state: Returns the current job ids and statistics
            on_state_change: Called with (old, new) on every state transition
        """
        self.settings = settings
        self.transport = transport
        self.on_job_assigned = on_job_assigned
        self.on_job_cancelled = on_job_cancelled
        self.heartbeat_state = heartbeat_state
        self.on_state_change = on_state_change

        self.retry_config = settings.reconnect_retry_config()
        self.poll_interval = settings.poll_interval_ms / 1000.0
        self.heartbeat_interval = settings.heartbeat_interval_seconds

        self.state = ConnectionState.OFFLINE
        self.agent_id: Optional[str] = None
        self.server_id: Optional[str] = None
        self.connection_attempts = 0

        self._connect_task: Optional["asyncio.Task[bool]"] = None
        self._intentional_close = False
        self._shutdown = False
        self._generation = 0

        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._receive_task: Optional[asyncio.Task[None]] = None
        self._timers_stopped = asyncio.Event()
        self._pending_sends: Set["asyncio.Task[None]"] = set()

        self.stats: StatsType = {
            "connects": 0,
            "connect_failures": 0,
            "reconnects_scheduled": 0,
            "heartbeats_sent": 0,
            "heartbeat_failures": 0,
            "polls": 0,
            "reports_sent": 0,
            "report_failures": 0,
            "frames_dropped": 0,
        }

        logger.info(f"Initialized connection manager ({transport.mode.value} transport)")

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.ONLINE

    @property
    def connecting(self) -> bool:
        return self._connect_task is not None and not self._connect_task.done()

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def set_identity(self, agent_id: str) -> None:
        """Adopt a new identity. Resets the consecutive attempt counter."""
        self.agent_id = agent_id
        self.server_id = None
        self.connection_attempts = 0

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        old = self.state
        self.state = state
        logger.info(f"Connection state {old.value} -> {state.value}", extra={"agent_id": self.agent_id})
        if self.on_state_change is not None:
            try:
                self.on_state_change(old, state)
            except Exception as e:
                logger.error(f"State listener failed: {e}")

    async def connect(self) -> bool:
        """
        Open the transport and register.

        A call made while an attempt is in flight waits for that attempt
        instead of starting another one.

        Returns:
            True if the agent is online afterwards
        """
        if self.connecting:
            return await self._await_attempt(self._connect_task)
        if self.state == ConnectionState.ONLINE:
            return True
        if not self.agent_id:
            logger.error("Cannot connect without an agent id")
            return False
        if self.retry_config.exhausted(self.connection_attempts):
            self._set_state(ConnectionState.ERROR)
            logger.error(f"Giving up after {self.connection_attempts} connection attempts")
            return False

        self._connect_task = asyncio.create_task(self._attempt(self.agent_id))
        return await self._await_attempt(self._connect_task)

    @staticmethod
    async def _await_attempt(task: "asyncio.Task[bool]") -> bool:
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # The attempt was abandoned by disconnect(); the caller was not cancelled
            if task.cancelled():
                return False
            raise

    async def _attempt(self, agent_id: str) -> bool:
        self._shutdown = False
        self._intentional_close = False
        self._generation += 1
        self.connection_attempts += 1
        attempt = self.connection_attempts
        self._set_state(ConnectionState.CONNECTING)

        try:
            await self.stop_timers()
            await self.transport.open()
            response = await self.transport.register(agent_id, self.settings.to_descriptor())
        except Exception as e:
            self.stats["connect_failures"] += 1
            logger.warning(
                f"Connection attempt {attempt} failed: {e}",
                extra={"agent_id": agent_id, "attempt": attempt},
            )
            await self._close_transport()
            if self.retry_config.exhausted(self.connection_attempts):
                self._set_state(ConnectionState.ERROR)
                logger.error(f"Giving up after {self.connection_attempts} connection attempts")
            else:
                self._set_state(ConnectionState.OFFLINE)
                self._schedule_reconnect(self.retry_config.calculate_delay(self.connection_attempts - 1))
            return False

        if response.server_id:
            self.server_id = response.server_id
        self.connection_attempts = 0
        self.stats["connects"] += 1
        self._set_state(ConnectionState.ONLINE)
        self._start_timers()
        return True

    async def _cancel_attempt(self) -> None:
        task = self._connect_task
        self._connect_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Abandoned in-flight connection attempt", extra={"agent_id": self.agent_id})

    def _schedule_reconnect(self, delay: float) -> bool:
        """Schedule one connect after ``delay`` seconds unless one is already pending"""
        if self._shutdown:
            return False
        if self.reconnect_pending:
            logger.debug("Reconnect already pending")
            return False
        self.stats["reconnects_scheduled"] += 1
        logger.info(f"Reconnecting in {delay:.1f}s", extra={"agent_id": self.agent_id})
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))
        return True

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # Cleared before connecting so a failed attempt can schedule the next one
        self._reconnect_task = None
        await self.connect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

    def _start_timers(self) -> None:
        self._timers_stopped.clear()
        if self.transport.mode == TransportMode.HTTP:
            self._poll_task = asyncio.create_task(self._poll_loop())
        else:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            self._receive_task = asyncio.create_task(self._receive_loop(self._generation))

    async def stop_timers(self) -> None:
        """Stop the heartbeat ticker, the poll loop and the receive loop"""
        self._timers_stopped.set()
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._heartbeat_task, self._poll_task, self._receive_task)
            if task is not None and not task.done() and task is not current
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._heartbeat_task = None
        self._poll_task = None
        self._receive_task = None

    async def _wait_interval(self, interval: float) -> bool:
        """Sleep for ``interval``. Returns True if the timers were stopped meanwhile."""
        try:
            await asyncio.wait_for(self._timers_stopped.wait(), timeout=interval)
            return True
        except asyncio.TimeoutError:
            return False

    async def _heartbeat_loop(self) -> None:
        while not self._timers_stopped.is_set():
            if await self._wait_interval(self.heartbeat_interval):
                break
            try:
                await self.heartbeat()
            except Exception as e:
                logger.error(f"Unexpected error in heartbeat loop: {e}")

    async def _poll_loop(self) -> None:
        while not self._timers_stopped.is_set():
            try:
                await self.poll()
            except Exception as e:
                logger.error(f"Unexpected error in poll loop: {e}")
            if await self._wait_interval(self.poll_interval):
                break

    async def heartbeat(self) -> bool:
        """
        Send one heartbeat.

        A failure while online flips to offline and schedules exactly one
        reconnect; a success while offline flips back to online.
        """
        if not self.agent_id:
            return False

        current_jobs, statistics = self.heartbeat_state()
        message = Heartbeat(
            agent_id=self.agent_id,
            timestamp=now_ms(),
            current_jobs=current_jobs,
            statistics=StatisticsPayload(
                total_jobs=statistics.total_jobs,
                completed_jobs=statistics.completed_jobs,
                failed_jobs=statistics.failed_jobs,
            ),
        )

        try:
            await self.transport.send(message)
        except Exception as e:
            self.stats["heartbeat_failures"] += 1
            logger.warning(f"Heartbeat failed: {e}", extra={"agent_id": self.agent_id})
            if self.state == ConnectionState.ONLINE:
                self._set_state(ConnectionState.OFFLINE)
                self._schedule_reconnect(self.settings.heartbeat_failure_reconnect_delay_seconds)
            return False

        self.stats["heartbeats_sent"] += 1
        if self.state == ConnectionState.OFFLINE:
            logger.info("Heartbeat succeeded while offline, back online")
            self._cancel_reconnect()
            self.connection_attempts = 0
            self._set_state(ConnectionState.ONLINE)
        return True

    async def poll(self) -> None:
        """One poll tick: fetch and dispatch pending jobs when online, then always heartbeat"""
        self.stats["polls"] += 1
        if self.state == ConnectionState.ONLINE and self.agent_id:
            try:
                jobs = await self.transport.fetch_pending_jobs(self.agent_id)
            except Exception as e:
                logger.warning(f"Failed to fetch pending jobs: {e}")
                jobs = []

            if jobs:
                logger.info(f"Received {len(jobs)} pending jobs")
            for payload in jobs:
                try:
                    await self.on_job_assigned(payload)
                except Exception as e:
                    logger.error(f"Job assignment handler failed: {e}")

        await self.heartbeat()

    async def _receive_loop(self, generation: int) -> None:
        try:
            async for raw in self.transport.messages():
                await self._handle_frame(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Websocket receive error: {e}", extra={"agent_id": self.agent_id})
            if generation == self._generation:
                self._set_state(ConnectionState.ERROR)

        if generation == self._generation:
            await self._handle_close(self.transport.close_code)

    async def _handle_frame(self, raw: Any) -> None:
        try:
            message = parse_server_message(raw)
        except ValidationError as e:
            self.stats["frames_dropped"] += 1
            logger.warning(f"Dropping unrecognised server message ({e.error_count()} errors)")
            return

        try:
            if isinstance(message, JobAssigned):
                await self.on_job_assigned(message.assignment().to_wire())
            elif isinstance(message, JobCancelled):
                await self.on_job_cancelled(message.to_wire())
            elif isinstance(message, AgentRegistered):
                if message.server_id:
                    self.server_id = message.server_id
                logger.info(f"Registration acknowledged by server {self.server_id}")
            elif isinstance(message, HeartbeatAck):
                logger.debug("Heartbeat acknowledged")
        except Exception as e:
            logger.error(f"Handler for {message.type} failed: {e}")

    async def _handle_close(self, code: Optional[int]) -> None:
        heartbeat_task = self._heartbeat_task
        self._heartbeat_task = None
        if heartbeat_task is not None and not heartbeat_task.done():
            heartbeat_task.cancel()

        if self._intentional_close or code == NORMAL_CLOSURE:
            logger.info(f"Connection closed cleanly (code {code})")
            self._set_state(ConnectionState.OFFLINE)
            return

        logger.warning(f"Connection lost (code {code})")
        self._set_state(ConnectionState.OFFLINE)
        self._schedule_reconnect(self.retry_config.calculate_delay(self.connection_attempts))

    def report_result(self, job_id: str, outcome: JobOutcome) -> None:
        """Send a terminal job report without blocking the caller. Failures are logged, never retried."""
        message = JobResult(
            agent_id=self.agent_id or "",
            payload=JobResultPayload(
                job_id=job_id,
                success=outcome.success,
                status="completed" if outcome.success else "failed",
                result=outcome.data,
                error=outcome.error,
                processing_time=outcome.processing_time_ms or 0,
                timestamp=now_ms(),
            ),
        )
        task = asyncio.create_task(self._send_report(message))
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)

    async def _send_report(self, message: OutboundMessage) -> None:
        try:
            await self.transport.send(message)
            self.stats["reports_sent"] += 1
        except Exception as e:
            self.stats["report_failures"] += 1
            logger.error(f"Failed to send job result: {e}", extra={"agent_id": self.agent_id})

    async def drain(self) -> None:
        """Wait for in-flight result sends"""
        if self._pending_sends:
            await asyncio.gather(*list(self._pending_sends), return_exceptions=True)

    async def force_reconnect(self) -> bool:
        """
        Reconnect on request. Resets the attempt counter.

        Returns:
            False if a reconnect was already pending or a connect in flight
        """
        self.connection_attempts = 0
        if self.reconnect_pending or self.connecting:
            logger.info("Reconnect already in progress, ignoring request")
            return False

        self._shutdown = False
        await self._close()
        self._set_state(ConnectionState.OFFLINE)
        return self._schedule_reconnect(self.settings.force_reconnect_delay_seconds)

    async def delete_agent(self, agent_id: str) -> bool:
        """Best-effort server-side deletion of an identity"""
        try:
            await self.transport.delete_agent(agent_id)
        except Exception as e:
            logger.warning(f"Failed to delete agent {agent_id} on the server: {e}")
            return False
        logger.info(f"Deleted agent {agent_id} on the server")
        return True

    async def _close_transport(self) -> None:
        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(f"Error closing transport: {e}")

    async def _close(self) -> None:
        self._intentional_close = True
        await self.stop_timers()
        await self._close_transport()

    async def disconnect(self) -> None:
        """Close the connection on purpose and stop every timer"""
        self._shutdown = True
        self._cancel_reconnect()
        await self._cancel_attempt()
        await self._close()
        self._set_state(ConnectionState.OFFLINE)

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "agent_id": self.agent_id,
            "server_id": self.server_id,
            "transport": self.transport.mode.value,
            "connection_attempts": self.connection_attempts,
            "reconnect_pending": self.reconnect_pending,
            "stats": dict(self.stats),
        }
