"""
Agent coordinator.

Ties the resource pool, job registry, job executor and connection manager
together under one agent identity and reacts to the agent's external
events: job assignment and cancellation, identity changes and shutdown.
"""

import asyncio
import logging
import signal
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from ...schema.messages import JobAssignment
from ..config.settings import AgentSettings, get_cached_settings
from ..connection import ConnectionManager, Transport, create_transport
from ..core.exceptions import ResourceUnavailable
from ..core.identity import AGENT_ALIAS_KEY, AGENT_ID_KEY, extract_alias, generate_agent_id
from ..core.types import (
    CANCELLED_REASON,
    NO_RESOURCE_AVAILABLE,
    AgentStatistics,
    ConnectionState,
    InFlightJobPolicy,
    Job,
    JobOptions,
    JobOutcome,
    Resource,
    now_ms,
)
from ..pool.host import ResourceHost
from ..pool.resource_pool import ResourcePool
from ..storage.store import KeyValueStore
from ..utils.logging import AgentLoggerAdapter, get_agent_logger
from .job_executor import JobExecutor
from .job_registry import JobRegistry

logger = logging.getLogger(__name__)

SERVER_ID_KEY = "serverId"
IS_CONNECTED_KEY = "isConnected"
CONNECTION_STATUS_KEY = "connectionStatus"
CURRENT_JOBS_KEY = "currentJobs"
STATISTICS_KEY = "statistics"
LAST_UPDATE_KEY = "lastUpdate"


class AgentCoordinator:
    """
    Top-level orchestrator of one crawling agent.

    Every collaborator is injected so the same coordinator runs against a
    real browser and job server or against in-process doubles.
    """

    def __init__(
        self,
        store: KeyValueStore,
        host: ResourceHost,
        settings: Optional[AgentSettings] = None,
        transport: Optional[Transport] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize the coordinator.

        Args:
            store: Persistent key-value store for identity and snapshots
            host: Host providing the pooled resources
            settings: Optional agent settings (uses cached settings if None)
            transport: Optional transport (built from settings if None)
            clock: Millisecond clock
        """
        self.settings = settings or get_cached_settings()
        self.store = store
        self.host = host
        self.clock = clock

        self.agent_id: Optional[str] = None
        self.agent_alias: Optional[str] = None
        self.statistics = AgentStatistics()

        self.registry = JobRegistry()
        self.pool = ResourcePool(
            host,
            store,
            size=self.settings.pool_size,
            health_check_interval=self.settings.health_check_interval_seconds,
        )
        self.connection = ConnectionManager(
            self.settings,
            transport or create_transport(self.settings),
            on_job_assigned=self.on_job_assigned,
            on_job_cancelled=self.on_job_cancelled,
            heartbeat_state=self._heartbeat_state,
            on_state_change=self._on_connection_state,
        )
        self.executor = JobExecutor(
            self.registry,
            self.pool,
            host,
            reporter=self.connection.report_result,
            statistics=self.statistics,
            search_url_template=self.settings.search_url_template,
            ready_poll_interval_ms=self.settings.ready_poll_interval_ms,
            settle_delay_ms=self.settings.settle_delay_ms,
            clock=clock,
            on_finished=self._on_job_finished,
        )

        self.log = AgentLoggerAdapter(get_agent_logger(__name__))

        self._identity_lock = asyncio.Lock()
        self._job_tasks: Set["asyncio.Task[Any]"] = set()
        self._background: Set["asyncio.Task[Any]"] = set()
        self._shutdown_event = asyncio.Event()
        self._started = False
        self._shutdown_requested = False

    async def start(self) -> None:
        """Load the identity, fill the resource pool and connect"""
        logger.info("Starting agent coordinator...")
        try:
            await self._load_identity()
            await self.pool.initialize(self.settings.pool_size)
            self.pool.start_monitoring()
            await self._persist_snapshot()
        except Exception as e:
            logger.error(f"Failed to start agent coordinator: {e}")
            raise

        self._started = True
        logger.info(f"Agent {self.agent_id} started with {self.pool.size} resources")
        await self.connection.connect()

    async def run(self) -> None:
        """Start and serve until shutdown is requested"""
        if not self._started:
            await self.start()
        await self._shutdown_event.wait()

    async def _load_identity(self) -> None:
        stored = await self.store.get([AGENT_ID_KEY, AGENT_ALIAS_KEY, STATISTICS_KEY])
        stored_id = stored.get(AGENT_ID_KEY)
        alias = self.settings.agent_alias or stored.get(AGENT_ALIAS_KEY)

        if self.settings.agent_id:
            agent_id = self.settings.agent_id
        elif stored_id:
            agent_id = stored_id
        else:
            agent_id = generate_agent_id(alias)
            logger.info(f"Generated new agent id {agent_id}")

        if agent_id == stored_id and isinstance(stored.get(STATISTICS_KEY), dict):
            try:
                restored = AgentStatistics.model_validate(stored[STATISTICS_KEY])
            except ValidationError as e:
                logger.warning(f"Ignoring malformed persisted statistics: {e}")
            else:
                self.statistics.total_jobs = restored.total_jobs
                self.statistics.completed_jobs = restored.completed_jobs
                self.statistics.failed_jobs = restored.failed_jobs

        self._adopt_identity(agent_id, alias)
        await self._persist_identity()

    def _adopt_identity(self, agent_id: str, alias: Optional[str]) -> None:
        self.agent_id = agent_id
        self.agent_alias = alias
        self.connection.set_identity(agent_id)
        self.log.rebind(agent_id)

    async def _persist_identity(self) -> None:
        await self.store.set({AGENT_ID_KEY: self.agent_id})
        if self.agent_alias:
            await self.store.set({AGENT_ALIAS_KEY: self.agent_alias})
        else:
            await self.store.remove([AGENT_ALIAS_KEY])

    def _heartbeat_state(self) -> Tuple[List[str], AgentStatistics]:
        return self.registry.job_ids(), self.statistics

    async def on_job_assigned(self, payload: Dict[str, Any]) -> Optional[Job]:
        """
        Register and dispatch one job assignment.

        Invalid payloads are logged and dropped. Returns the registered job,
        or None when the assignment was rejected.
        """
        try:
            assignment = JobAssignment.model_validate(payload)
            options = JobOptions.model_validate(assignment.options)
        except ValidationError as e:
            logger.warning(f"Dropping invalid job assignment: {e.error_count()} errors", extra={"payload": payload})
            return None
        if "timeout_ms" not in options.model_fields_set:
            options.timeout_ms = self.settings.default_job_timeout_ms

        job = Job(id=assignment.job_id, query=assignment.query, options=options, start_time=self.clock())
        if not self.registry.insert(job):
            logger.info(f"Ignoring duplicate assignment of live job {job.id}", extra={"job_id": job.id})
            return None

        self.statistics.total_jobs += 1
        self.log.log_job_assigned(job.id, job.query, timeout_ms=options.timeout_ms)

        try:
            resource = await self._acquire(job)
        except ResourceUnavailable as e:
            logger.warning(str(e), extra={"job_id": job.id})
            self.executor.fail_immediately(job, NO_RESOURCE_AVAILABLE)
            await self._persist_snapshot()
            return job

        if not self.registry.contains(job.id):
            # Cancelled while the resource was being acquired
            await self.pool.release(resource.id)
            return job

        job.resource_id = resource.id
        task = asyncio.create_task(self._run_job(job, resource))
        self._job_tasks.add(task)
        task.add_done_callback(self._job_tasks.discard)
        return job

    async def _acquire(self, job: Job) -> Resource:
        resource = await self.pool.acquire(job.id)
        if resource is None:
            raise ResourceUnavailable(f"No idle resource for job {job.id} (pool size {self.pool.size})")
        return resource

    async def _run_job(self, job: Job, resource: Resource) -> None:
        try:
            await self.executor.execute(job, resource)
        except Exception as e:
            logger.error(f"Unexpected error executing job {job.id}: {e}", extra={"job_id": job.id})
        finally:
            await self._persist_snapshot()

    def _on_job_finished(self, job: Job, outcome: JobOutcome) -> None:
        if outcome.success:
            self.log.log_job_completed(job.id, outcome.processing_time_ms or 0)
        else:
            self.log.log_job_failed(job.id, outcome.error or "unknown error")

    async def on_job_cancelled(self, payload: Dict[str, Any]) -> bool:
        """Drop a job on the server's request. No terminal report is sent."""
        job_id = payload.get("jobId") or payload.get("job_id")
        if not job_id:
            logger.warning("Dropping job cancellation without a job id")
            return False

        job = await self.executor.drop(job_id)
        if job is None:
            logger.debug(f"Cancellation for unknown job {job_id} ignored")
            return False

        self.log.log_job_dropped(job.id, payload.get("reason") or "cancelled by server")
        await self._persist_snapshot()
        return True

    async def _clear_in_flight(self) -> int:
        policy = self.settings.identity_change_job_policy
        job_ids = self.registry.job_ids()
        for job_id in job_ids:
            if policy == InFlightJobPolicy.REPORT_CANCELLED:
                await self.executor.finish(job_id, JobOutcome(success=False, error=CANCELLED_REASON))
            else:
                job = await self.executor.drop(job_id)
                if job is not None:
                    self.log.log_job_dropped(job.id, "identity change")
        return len(job_ids)

    async def on_identity_change_requested(self, new_id: str, alias: Optional[str] = None) -> str:
        """
        Switch to a new agent identity.

        Stops heartbeat and polling, clears in-flight jobs, deletes the old
        identity on the server (best effort), resets statistics and
        reconnects under the new id.
        """
        new_id = (new_id or "").strip()
        if not new_id:
            raise ValueError("agent id must not be empty")

        async with self._identity_lock:
            old_id = self.agent_id
            logger.info(f"Changing agent id {old_id} -> {new_id}")

            await self.connection.stop_timers()
            cleared = await self._clear_in_flight()
            await self.connection.drain()
            await self.connection.disconnect()

            if old_id and old_id != new_id:
                await self.connection.delete_agent(old_id)

            self._adopt_identity(new_id, alias or extract_alias(new_id))
            self.statistics.reset()
            await self._persist_identity()
            await self._persist_snapshot()

            logger.info(f"Agent id changed to {new_id} ({cleared} in-flight jobs cleared)")
            await self.connection.connect()
        return new_id

    async def update_alias(self, alias: Optional[str]) -> str:
        """Generate a new id from ``alias`` and switch to it"""
        alias = (alias or "").strip() or None
        return await self.on_identity_change_requested(generate_agent_id(alias), alias=alias)

    async def force_reconnect(self) -> bool:
        return await self.connection.force_reconnect()

    def _on_connection_state(self, old: ConnectionState, new: ConnectionState) -> None:
        self.log.log_connection_state(new.value, previous=old.value)
        if self._started and not self._shutdown_requested:
            task = asyncio.create_task(self._persist_snapshot())
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    def snapshot(self) -> Dict[str, Any]:
        return {
            AGENT_ID_KEY: self.agent_id,
            SERVER_ID_KEY: self.connection.server_id,
            IS_CONNECTED_KEY: self.connection.is_connected,
            CONNECTION_STATUS_KEY: self.connection.state.value,
            CURRENT_JOBS_KEY: self.registry.job_ids(),
            STATISTICS_KEY: self.statistics.to_wire(),
            LAST_UPDATE_KEY: self.clock(),
        }

    async def _persist_snapshot(self) -> None:
        try:
            await self.store.set(self.snapshot())
        except Exception as e:
            logger.error(f"Failed to persist agent state: {e}")

    def get_status(self) -> Dict[str, Any]:
        """Status as exposed to the control plane"""
        return {
            AGENT_ID_KEY: self.agent_id,
            AGENT_ALIAS_KEY: self.agent_alias,
            SERVER_ID_KEY: self.connection.server_id,
            IS_CONNECTED_KEY: self.connection.is_connected,
            CONNECTION_STATUS_KEY: self.connection.state.value,
            CURRENT_JOBS_KEY: self.registry.job_ids(),
            STATISTICS_KEY: self.statistics.to_wire(),
            "pool": self.pool.get_stats(),
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "statistics": self.statistics.to_wire(),
            "in_flight": len(self.registry),
            "pool": self.pool.get_stats(),
            "connection": self.connection.get_status(),
        }

    async def health_check(self) -> Dict[str, Any]:
        """Overall health from the pool and connection state"""
        health: Dict[str, Any] = {
            "status": "healthy",
            "agent_id": self.agent_id,
            "components": {},
        }

        try:
            health["components"]["resource_pool"] = await self.pool.health_check()
            connection_status = "healthy"
            if self.connection.state == ConnectionState.ERROR:
                connection_status = "unhealthy"
            elif self.connection.state != ConnectionState.ONLINE:
                connection_status = "degraded"
            health["components"]["connection"] = {
                "status": connection_status,
                "state": self.connection.state.value,
            }

            component_statuses = [comp.get("status", "unknown") for comp in health["components"].values()]
            if any(status == "unhealthy" for status in component_statuses):
                health["status"] = "unhealthy"
            elif any(status == "degraded" for status in component_statuses):
                health["status"] = "degraded"

        except Exception as e:
            health["status"] = "unhealthy"
            health["error"] = str(e)

        return health

    async def on_shutdown(self) -> None:
        """Stop timers, flush pending reports and release pool bookkeeping"""
        if self._shutdown_requested:
            return
        logger.info(f"Shutting down agent {self.agent_id}...")
        self._shutdown_requested = True

        try:
            await self.connection.stop_timers()
            await self.connection.drain()
            await self.connection.disconnect()

            for job in self.registry.clear():
                job.cancel_timeout()
            for task in list(self._job_tasks):
                task.cancel()
            await asyncio.gather(*self._job_tasks, *self._background, return_exceptions=True)
            await self.executor.wait_background()

            await self._persist_snapshot()
            await self.pool.shutdown()
            await self.host.close()
            await self.store.close()
            logger.info(f"Agent {self.agent_id} shutdown complete")

        except Exception as e:
            logger.error(f"Error during shutdown: {e}")
        finally:
            self._shutdown_event.set()

    def setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown"""

        def signal_handler(sig: int, frame: Any) -> None:
            logger.info(f"Received signal {sig}, requesting shutdown...")
            asyncio.get_running_loop().create_task(self.on_shutdown())

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)
