"""
Job execution against a pooled resource.

Runs one job on one resource: navigate to the search URL, wait for the
page to become ready, let late dynamic content settle, then ask the page
context for its data. A timer armed at dispatch races the execution; the
job registry decides which of the two produces the terminal report.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set
from urllib.parse import quote

from pydantic import ValidationError

from ...schema.messages import CollectPageDataRequest, CollectPageDataResponse
from ..core.exceptions import ExtractionFailure, JobTimeout
from ..core.types import (
    TIMEOUT_REASON,
    AgentStatistics,
    Job,
    JobOutcome,
    JobStatus,
    ReadyState,
    Resource,
    now_ms,
)
from ..pool.host import ResourceHost
from ..pool.resource_pool import ResourcePool
from .job_registry import JobRegistry

logger = logging.getLogger(__name__)

# Characters encodeURIComponent leaves unescaped
_URI_COMPONENT_SAFE = "-_.!~*'()"

ResultReporter = Callable[[str, JobOutcome], None]
FinishListener = Callable[[Job, JobOutcome], None]


def build_search_url(template: str, query: str) -> str:
    return template.format(query=quote(query, safe=_URI_COMPONENT_SAFE))


class JobExecutor:
    """
    Executes jobs on pooled resources with per-job timeouts.

    Every terminal outcome goes through ``_claim``, which removes the job
    from the registry first. Only the caller that actually removed the
    entry reports; any later signal for the same job is dropped.
    """

    def __init__(
        self,
        registry: JobRegistry,
        pool: ResourcePool,
        host: ResourceHost,
        reporter: ResultReporter,
        statistics: AgentStatistics,
        search_url_template: str,
        ready_poll_interval_ms: int = 100,
        settle_delay_ms: int = 200,
        clock: Callable[[], int] = now_ms,
        on_finished: Optional[FinishListener] = None,
    ):
        """
        Initialize the job executor.

        Args:
            registry: Registry of in-flight jobs
            pool: Resource pool that receives released resources
            host: Host used to drive resources
            reporter: Non-blocking sink for terminal reports
            statistics: Shared job counters
            search_url_template: Target URL with a ``{query}`` placeholder
            ready_poll_interval_ms: Readiness polling interval
            settle_delay_ms: Extra wait after the page reports ready
            clock: Millisecond clock used for processing times
            on_finished: Optional callback invoked once per terminal outcome
        """
        self.registry = registry
        self.pool = pool
        self.host = host
        self.reporter = reporter
        self.statistics = statistics
        self.search_url_template = search_url_template
        self.ready_poll_interval = ready_poll_interval_ms / 1000.0
        self.settle_delay = settle_delay_ms / 1000.0
        self.clock = clock
        self.on_finished = on_finished

        self._background: Set["asyncio.Task[Any]"] = set()

    def build_target_url(self, query: str) -> str:
        return build_search_url(self.search_url_template, query)

    async def execute(self, job: Job, resource: Resource) -> bool:
        """
        Run a registered job on an acquired resource.

        Returns:
            True if this call produced the job's terminal report, False if
            the timeout (or a cancellation) resolved the job first
        """
        if not self.registry.contains(job.id):
            return False
        job.status = JobStatus.EXECUTING
        job.resource_id = resource.id

        loop = asyncio.get_running_loop()
        job.timeout_handle = loop.call_later(job.timeout_seconds, self._on_timeout, job.id)

        target_url = self.build_target_url(job.query)
        logger.info(
            f"Executing job {job.id}",
            extra={"job_id": job.id, "resource_id": resource.id, "url": target_url},
        )

        try:
            await self.host.navigate(resource.id, target_url)

            if not await self._wait_until_ready(job.id, resource.id):
                return False

            if self.settle_delay > 0:
                await asyncio.sleep(self.settle_delay)
            if not self.registry.contains(job.id):
                return False

            raw = await self.host.send_message(resource.id, CollectPageDataRequest(job_id=job.id))
            data = self._parse_response(raw)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Job {job.id} failed: {e}", extra={"job_id": job.id, "error": str(e)})
            return await self.finish(job.id, JobOutcome(success=False, error=str(e) or type(e).__name__))

        return await self.finish(
            job.id,
            JobOutcome(success=True, data=data, processing_time_ms=job.elapsed_ms(self.clock())),
        )

    async def _wait_until_ready(self, job_id: str, resource_id: str) -> bool:
        """Poll readiness until complete. Returns False once the job is no longer live."""
        while self.registry.contains(job_id):
            state = await self.host.ready_state(resource_id)
            if state == ReadyState.COMPLETE:
                return True
            await asyncio.sleep(self.ready_poll_interval)
        return False

    def _parse_response(self, raw: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if raw is None:
            raise ExtractionFailure("no response from page context")
        try:
            response = CollectPageDataResponse.model_validate(raw)
        except ValidationError as e:
            raise ExtractionFailure(f"malformed page context response ({e.error_count()} errors)") from e
        if not response.success:
            raise ExtractionFailure(response.error or "page context reported failure")
        return response.data

    def _on_timeout(self, job_id: str) -> None:
        job = self.registry.get(job_id)
        if job is not None:
            logger.warning(str(JobTimeout(job_id, job.options.timeout_ms)), extra={"job_id": job_id})
        claimed = self._claim(job_id, JobOutcome(success=False, error=TIMEOUT_REASON))
        if claimed is not None and claimed.resource_id:
            self._spawn(self.pool.release(claimed.resource_id))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _claim(self, job_id: str, outcome: JobOutcome) -> Optional[Job]:
        """Resolve a job exactly once: remove, count, report."""
        job = self.registry.remove(job_id)
        if job is None:
            logger.debug(f"Dropping late signal for resolved job {job_id}", extra={"job_id": job_id})
            return None

        job.cancel_timeout()
        job.status = JobStatus.COMPLETED if outcome.success else JobStatus.FAILED
        if outcome.processing_time_ms is None:
            outcome.processing_time_ms = job.elapsed_ms(self.clock())

        self.statistics.record_outcome(outcome.success)
        self.reporter(job.id, outcome)

        if self.on_finished is not None:
            try:
                self.on_finished(job, outcome)
            except Exception as e:
                logger.error(f"Finish listener failed for job {job.id}: {e}")
        return job

    async def finish(self, job_id: str, outcome: JobOutcome) -> bool:
        """
        Send the terminal report for a job and release its resource.

        Returns:
            False if the job had already been resolved
        """
        job = self._claim(job_id, outcome)
        if job is None:
            return False
        if job.resource_id:
            await self.pool.release(job.resource_id)
        return True

    def fail_immediately(self, job: Job, reason: str) -> bool:
        """Fail a registered job that never got a resource."""
        return self._claim(job.id, JobOutcome(success=False, error=reason)) is not None

    async def drop(self, job_id: str) -> Optional[Job]:
        """
        Remove a job without reporting it and release its resource.

        Returns:
            The dropped job, or None if it was no longer live
        """
        job = self.registry.remove(job_id)
        if job is None:
            return None
        job.cancel_timeout()
        if job.resource_id:
            await self.pool.release(job.resource_id)
        return job

    async def wait_background(self) -> None:
        """Wait for releases scheduled from timeout callbacks"""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
