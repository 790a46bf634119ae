"""Tests for the resource pool."""

import asyncio
from typing import AsyncIterator

import pytest

from app.agent.core.types import ResourceStatus
from app.agent.pool.host import BLANK_URL, InMemoryHost
from app.agent.pool.resource_pool import POOL_IDS_KEY, ResourcePool
from app.agent.storage.store import MemoryStore


class SlowCreateHost(InMemoryHost):
    """Host whose page creation yields to the event loop"""

    def __init__(self, create_delay: float = 0.02):
        super().__init__()
        self.create_delay = create_delay

    async def create(self) -> str:
        await asyncio.sleep(self.create_delay)
        return await super().create()


@pytest.fixture
async def pool(host: InMemoryHost, store: MemoryStore) -> AsyncIterator[ResourcePool]:
    """Provide an initialized pool of three resources."""
    pool = ResourcePool(host, store, size=3, health_check_interval=60.0)
    await pool.initialize()
    yield pool
    await pool.stop_monitoring()


class TestInitialize:
    @pytest.mark.asyncio
    async def test_creates_target_size_and_persists_ids(self, pool: ResourcePool, store: MemoryStore):
        assert pool.size == 3
        assert pool.idle_count == 3
        assert store.snapshot()[POOL_IDS_KEY] == [resource.id for resource in pool.resources]

    @pytest.mark.asyncio
    async def test_reclaims_only_live_blank_handles(self, host: InMemoryHost):
        host.adopt("old-blank")
        host.adopt("old-busy", url="https://search.example.com/search?query=tv")
        store = MemoryStore({POOL_IDS_KEY: ["old-blank", "old-busy", "gone"]})

        pool = ResourcePool(host, store, size=3)
        await pool.initialize()

        ids = [resource.id for resource in pool.resources]
        assert ids[0] == "old-blank"
        assert "old-busy" not in ids
        assert "gone" not in ids
        assert pool.size == 3
        assert pool.stats["resources_reclaimed"] == 1
        assert pool.stats["resources_created"] == 2

    @pytest.mark.asyncio
    async def test_creation_failures_are_skipped(self, store: MemoryStore):
        host = InMemoryHost(fail_creates=1)
        pool = ResourcePool(host, store, size=3)

        await pool.initialize()

        assert pool.size == 2
        assert pool.stats["creation_failures"] == 1
        health = await pool.health_check()
        assert health["status"] == "degraded"


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_acquire_until_exhausted(self, pool: ResourcePool):
        first = await pool.acquire("job-1")
        assert first is not None
        assert first.status == ResourceStatus.BUSY
        assert first.assigned_job_id == "job-1"

        await pool.acquire("job-2")
        await pool.acquire("job-3")

        assert await pool.acquire("job-4") is None
        assert pool.busy_count == 3
        assert pool.stats["exhaustions"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_acquires_get_distinct_resources(self, pool: ResourcePool):
        acquired = await asyncio.gather(*(pool.acquire(f"job-{i}") for i in range(4)))

        claimed = [resource.id for resource in acquired if resource is not None]
        assert len(claimed) == 3
        assert len(set(claimed)) == 3
        assert acquired.count(None) == 1

    @pytest.mark.asyncio
    async def test_defunct_resource_is_replaced_on_acquire(
        self, pool: ResourcePool, host: InMemoryHost, store: MemoryStore
    ):
        dead_id = pool.resources[0].id
        host.destroy(dead_id)

        resource = await pool.acquire("job-1")

        assert resource is not None
        assert resource.id != dead_id
        assert pool.size == 3
        assert dead_id not in store.snapshot()[POOL_IDS_KEY]
        assert pool.stats["resources_replaced"] == 1

    @pytest.mark.asyncio
    async def test_failed_replacement_shrinks_pool(self, pool: ResourcePool, host: InMemoryHost):
        dead_id = pool.resources[0].id
        survivor_id = pool.resources[1].id
        host.destroy(dead_id)
        host.fail_creates = 1

        resource = await pool.acquire("job-1")

        assert resource is not None
        assert resource.id == survivor_id
        assert pool.size == 2

    @pytest.mark.asyncio
    async def test_release_resets_to_blank_then_idle(self, pool: ResourcePool, host: InMemoryHost):
        resource = await pool.acquire("job-1")
        await host.navigate(resource.id, "https://search.example.com/search?query=tv")

        await pool.release(resource.id)

        assert resource.status == ResourceStatus.IDLE
        assert resource.assigned_job_id is None
        assert host.pages[resource.id].url == BLANK_URL
        assert host.navigations[resource.id][-1] == BLANK_URL

    @pytest.mark.asyncio
    async def test_release_of_unknown_resource_is_ignored(self, pool: ResourcePool):
        await pool.release("not-in-pool")
        assert pool.idle_count == 3


class TestHealth:
    @pytest.mark.asyncio
    async def test_check_health_evicts_and_refills(self, pool: ResourcePool, host: InMemoryHost):
        dead_id = pool.resources[1].id
        host.destroy(dead_id)

        result = await pool.check_health()

        assert result == {"evicted": 1, "created": 1, "size": 3}
        assert dead_id not in [resource.id for resource in pool.resources]

    @pytest.mark.asyncio
    async def test_sweep_during_replacement_keeps_busy_resource(self, store: MemoryStore):
        host = SlowCreateHost()
        pool = ResourcePool(host, store, size=3)
        await pool.initialize()
        dead, busy, _ = pool.resources
        busy.status = ResourceStatus.BUSY
        busy.assigned_job_id = "job-b"
        host.destroy(dead.id)

        acquiring = asyncio.create_task(pool.acquire("job-a"))
        await asyncio.sleep(0.005)
        await pool.check_health()
        acquired = await acquiring

        assert acquired is not None
        assert acquired.id == "page-4"
        assert [resource.id for resource in pool.resources] == ["page-4", "page-2", "page-3"]
        assert pool.get("page-2") is busy
        assert busy.assigned_job_id == "job-b"

        await pool.release("page-2")
        assert busy.status == ResourceStatus.IDLE

    @pytest.mark.asyncio
    async def test_monitoring_sweeps_periodically(self, host: InMemoryHost, store: MemoryStore, wait_until):
        pool = ResourcePool(host, store, size=2, health_check_interval=0.02)
        await pool.initialize()
        host.destroy(pool.resources[0].id)

        pool.start_monitoring()
        try:
            await wait_until(lambda: pool.stats["resources_evicted"] == 1)
            assert pool.size == 2
        finally:
            await pool.stop_monitoring()

    @pytest.mark.asyncio
    async def test_shutdown_forgets_ids_but_keeps_resources(
        self, pool: ResourcePool, host: InMemoryHost, store: MemoryStore
    ):
        ids = [resource.id for resource in pool.resources]

        await pool.shutdown()

        assert POOL_IDS_KEY not in store.snapshot()
        assert pool.size == 0
        assert all(resource_id in host.pages for resource_id in ids)
