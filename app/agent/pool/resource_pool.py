"""
Resource pool for the crawling agent.

Owns a fixed-size set of reusable execution resources (browser pages) and
their idle/busy state. Jobs borrow a resource, and the resource is reset
and returned to the pool when the job finishes; resources are never
destroyed on job completion. A periodic health sweep evicts resources that
disappeared from the host and tops the pool back up to its target size.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from ..core.types import Resource, ResourceStatus
from ..storage.store import KeyValueStore
from .host import ResourceHost

logger = logging.getLogger(__name__)

POOL_IDS_KEY = "resourcePoolIds"


class ResourcePool:
    """
    Fixed-size pool of reusable resources.

    The pool is the single owner of resource status. Only the
    Idle/Busy flag guards against two jobs sharing a resource: a slot is
    flagged Busy before any await so no other coroutine can claim it.
    """

    def __init__(
        self,
        host: ResourceHost,
        store: KeyValueStore,
        size: int = 3,
        health_check_interval: float = 10.0,
    ):
        """
        Initialize the resource pool.

        Args:
            host: Host that creates and drives resources
            store: Persistent store holding the pool's handle list
            size: Target number of pooled resources
            health_check_interval: Seconds between health sweeps
        """
        self.host = host
        self.store = store
        self.target_size = size
        self.health_check_interval = health_check_interval

        self._slots: List[Resource] = []
        # Serializes slot rewrites (replace) against the health sweep
        self._maintenance_lock = asyncio.Lock()

        self._health_task: Optional[asyncio.Task[None]] = None
        self._shutdown_event = asyncio.Event()

        self.stats: Dict[str, int] = {
            "resources_created": 0,
            "resources_reclaimed": 0,
            "resources_replaced": 0,
            "resources_evicted": 0,
            "creation_failures": 0,
            "acquisitions": 0,
            "exhaustions": 0,
            "health_checks": 0,
        }

        logger.info(f"Initialized resource pool with target size {size}")

    @property
    def size(self) -> int:
        return len(self._slots)

    @property
    def idle_count(self) -> int:
        return sum(1 for resource in self._slots if resource.status == ResourceStatus.IDLE)

    @property
    def busy_count(self) -> int:
        return sum(1 for resource in self._slots if resource.status == ResourceStatus.BUSY)

    @property
    def resources(self) -> List[Resource]:
        return list(self._slots)

    def get(self, resource_id: str) -> Optional[Resource]:
        for resource in self._slots:
            if resource.id == resource_id:
                return resource
        return None

    async def initialize(self, size: Optional[int] = None) -> None:
        """
        Fill the pool, reusing persisted resources where possible.

        Handles from a previous run are reused only if they still exist and
        show a blank page; stale handles are skipped silently.
        """
        if size is not None:
            self.target_size = size

        stored = await self.store.get([POOL_IDS_KEY])
        previous_ids = stored.get(POOL_IDS_KEY) or []

        for resource_id in previous_ids:
            if len(self._slots) >= self.target_size:
                break
            if self.get(resource_id) is not None:
                continue
            try:
                if await self.host.exists(resource_id) and await self.host.is_blank(resource_id):
                    self._slots.append(Resource(id=resource_id))
                    self.stats["resources_reclaimed"] += 1
            except Exception as e:
                logger.debug(f"Skipping stale resource {resource_id}: {e}")

        created = await self._fill()
        await self._persist()

        logger.info(
            f"Resource pool ready: {self.size}/{self.target_size} resources "
            f"({self.stats['resources_reclaimed']} reclaimed, {created} created)"
        )

    async def _create_resource(self) -> Optional[Resource]:
        try:
            resource_id = await self.host.create()
        except Exception as e:
            self.stats["creation_failures"] += 1
            logger.error(f"Failed to create resource: {e}")
            return None
        self.stats["resources_created"] += 1
        return Resource(id=resource_id)

    async def _fill(self) -> int:
        """Create resources for the shortfall. Returns the number created."""
        created = 0
        missing = self.target_size - len(self._slots)
        for _ in range(max(0, missing)):
            resource = await self._create_resource()
            if resource is not None:
                self._slots.append(resource)
                created += 1
        return created

    async def _persist(self) -> None:
        try:
            await self.store.set({POOL_IDS_KEY: [resource.id for resource in self._slots]})
        except Exception as e:
            logger.error(f"Failed to persist resource pool ids: {e}")

    async def acquire(self, job_id: Optional[str] = None) -> Optional[Resource]:
        """
        Claim an idle resource.

        Returns:
            The claimed resource, or None when the pool is exhausted
        """
        index = 0
        while index < len(self._slots):
            resource = self._slots[index]
            if resource.status != ResourceStatus.IDLE:
                index += 1
                continue

            # Claim before the existence check so concurrent callers skip it
            resource.status = ResourceStatus.BUSY
            resource.assigned_job_id = job_id

            try:
                alive = await self.host.exists(resource.id)
            except Exception as e:
                logger.warning(f"Existence check failed for resource {resource.id}: {e}")
                alive = False

            if alive:
                self.stats["acquisitions"] += 1
                logger.debug(f"Acquired resource {resource.id}", extra={"resource_id": resource.id, "job_id": job_id})
                return resource

            logger.warning(f"Resource {resource.id} is defunct, replacing it")
            replacement = await self.replace(resource)
            if replacement is None:
                # Slots shifted; rescan from the start
                index = 0
                continue
            index = self._slots.index(replacement)
            # Replacement is idle and lands in the same slot; re-examine it
            continue

        self.stats["exhaustions"] += 1
        logger.info("No idle resource available", extra={"job_id": job_id, "pool_size": self.size})
        return None

    async def release(self, resource_id: str) -> None:
        """
        Return a resource to the pool.

        The resource is reset to a blank page before it is flagged Idle.
        Reset failures are logged; a dead resource is replaced on the next
        acquire or health sweep.
        """
        resource = self.get(resource_id)
        if resource is None:
            logger.debug(f"Release of unknown resource {resource_id} ignored")
            return

        try:
            await self.host.reset(resource_id)
        except Exception as e:
            logger.warning(f"Failed to reset resource {resource_id}: {e}")

        resource.status = ResourceStatus.IDLE
        resource.assigned_job_id = None
        logger.debug(f"Released resource {resource_id}")

    async def replace(self, resource: Resource) -> Optional[Resource]:
        """
        Swap a defunct resource for a fresh one in the same slot.

        Returns:
            The new resource, or None if creation failed and the slot was
            removed, or if the resource had already left the pool
        """
        async with self._maintenance_lock:
            if resource not in self._slots:
                return None

            replacement = await self._create_resource()
            # Slots may have moved while the host was creating
            if resource not in self._slots:
                if replacement is not None:
                    logger.warning(f"Resource {resource.id} left the pool during replacement; discarding {replacement.id}")
                return None

            index = self._slots.index(resource)
            if replacement is None:
                self._slots.pop(index)
                logger.warning(f"Removed slot of resource {resource.id}; pool shrank to {self.size}")
            else:
                self._slots[index] = replacement
                self.stats["resources_replaced"] += 1
                logger.info(f"Replaced resource {resource.id} with {replacement.id}")

            await self._persist()
        return replacement

    async def check_health(self) -> Dict[str, int]:
        """
        Evict resources missing from the host and refill to target size.
        """
        self.stats["health_checks"] += 1
        evicted: List[Resource] = []

        async with self._maintenance_lock:
            for resource in list(self._slots):
                try:
                    alive = await self.host.exists(resource.id)
                except Exception as e:
                    logger.warning(f"Existence check failed for resource {resource.id}: {e}")
                    alive = False
                if not alive:
                    evicted.append(resource)

            for resource in evicted:
                if resource in self._slots:
                    self._slots.remove(resource)
                    self.stats["resources_evicted"] += 1
                    if resource.assigned_job_id:
                        logger.warning(
                            f"Evicted busy resource {resource.id}",
                            extra={"resource_id": resource.id, "job_id": resource.assigned_job_id},
                        )

            created = await self._fill()
            if evicted or created:
                await self._persist()
                logger.info(f"Health check: evicted {len(evicted)}, created {created}, pool size {self.size}")

        return {"evicted": len(evicted), "created": created, "size": self.size}

    def start_monitoring(self) -> None:
        """Start the periodic health sweep"""
        if self._health_task is not None and not self._health_task.done():
            return
        self._shutdown_event.clear()
        self._health_task = asyncio.create_task(self._health_loop())

    async def stop_monitoring(self) -> None:
        self._shutdown_event.set()
        if self._health_task and not self._health_task.done():
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
        self._health_task = None

    async def _health_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.health_check_interval)
                    break
                except asyncio.TimeoutError:
                    pass
                await self.check_health()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in resource health loop: {e}")

    async def shutdown(self) -> None:
        """
        Stop monitoring and forget the pool.

        Resources are left open; only the persisted handle list is cleared
        so a restarted agent can reclaim blank pages.
        """
        await self.stop_monitoring()
        try:
            await self.store.remove([POOL_IDS_KEY])
        except Exception as e:
            logger.error(f"Failed to clear persisted resource pool ids: {e}")
        self._slots.clear()
        logger.info("Resource pool shut down")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "target_size": self.target_size,
            "size": self.size,
            "idle": self.idle_count,
            "busy": self.busy_count,
        }

    async def health_check(self) -> Dict[str, Any]:
        """Report pool health. Running below target size is degraded, not unhealthy."""
        status = "healthy"
        if self.size == 0:
            status = "unhealthy"
        elif self.size < self.target_size:
            status = "degraded"
        return {
            "status": status,
            "size": self.size,
            "target_size": self.target_size,
            "idle": self.idle_count,
            "busy": self.busy_count,
            "monitoring": self._health_task is not None and not self._health_task.done(),
        }
