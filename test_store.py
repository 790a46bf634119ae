"""Tests for the persistent key-value stores."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from app.agent.core.exceptions import ConfigurationError
from app.agent.storage.store import JsonFileStore, MemoryStore, RedisStore, create_store
from conftest import make_settings


class FakeRedis:
    """Minimal hash-only stand-in for an asyncio Redis client"""

    def __init__(self):
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.closed = False

    async def hmget(self, name: str, keys: List[str]) -> List[Optional[str]]:
        data = self.hashes.get(name, {})
        return [data.get(key) for key in keys]

    async def hset(self, name: str, mapping: Dict[str, str]) -> int:
        self.hashes.setdefault(name, {}).update(mapping)
        return len(mapping)

    async def hdel(self, name: str, *keys: str) -> int:
        data = self.hashes.get(name, {})
        return sum(1 for key in keys if data.pop(key, None) is not None)

    async def aclose(self) -> None:
        self.closed = True


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_get_set_remove(self):
        store = MemoryStore({"agentId": "abc1"})

        await store.set({"agentAlias": "seoul", "statistics": {"totalJobs": 1}})
        assert await store.get(["agentId", "agentAlias", "missing"]) == {"agentId": "abc1", "agentAlias": "seoul"}

        await store.remove(["agentAlias"])
        assert "agentAlias" not in store.snapshot()

    @pytest.mark.asyncio
    async def test_listeners_receive_old_and_new_values(self):
        store = MemoryStore({"connectionStatus": "offline"})
        changes: List[Dict[str, Any]] = []
        unsubscribe = store.subscribe(changes.append)

        await store.set({"connectionStatus": "online"})
        await store.remove(["connectionStatus", "never-set"])
        unsubscribe()
        await store.set({"connectionStatus": "error"})

        assert changes == [
            {"connectionStatus": ("offline", "online")},
            {"connectionStatus": ("online", None)},
        ]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_writes(self):
        store = MemoryStore()

        def broken(changes):
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        await store.set({"agentId": "abc1"})

        assert store.snapshot() == {"agentId": "abc1"}


class TestJsonFileStore:
    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path: Path):
        path = tmp_path / "state" / "agent.json"
        store = JsonFileStore(path)
        await store.set({"agentId": "abc1", "resourcePoolIds": ["page-1", "page-2"]})
        await store.remove(["resourcePoolIds"])

        reopened = JsonFileStore(path)

        assert await reopened.get(["agentId", "resourcePoolIds"]) == {"agentId": "abc1"}
        assert json.loads(path.read_text(encoding="utf-8")) == {"agentId": "abc1"}

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_as_empty(self, tmp_path: Path):
        path = tmp_path / "agent.json"
        path.write_text("{not json", encoding="utf-8")

        store = JsonFileStore(path)

        assert await store.get(["agentId"]) == {}


class TestRedisStore:
    @pytest.mark.asyncio
    async def test_values_are_json_encoded_in_one_hash(self):
        client = FakeRedis()
        store = RedisStore("redis://unused", hash_key="agent-test", client=client)

        await store.set({"agentId": "abc1", "statistics": {"totalJobs": 2}})

        assert client.hashes["agent-test"] == {"agentId": '"abc1"', "statistics": '{"totalJobs": 2}'}
        assert await store.get(["agentId", "statistics", "missing"]) == {
            "agentId": "abc1",
            "statistics": {"totalJobs": 2},
        }

    @pytest.mark.asyncio
    async def test_non_json_values_are_skipped(self):
        client = FakeRedis()
        client.hashes["agent-test"] = {"agentId": "not-json"}
        store = RedisStore("redis://unused", hash_key="agent-test", client=client)

        assert await store.get(["agentId"]) == {}

    @pytest.mark.asyncio
    async def test_remove_and_close(self):
        client = FakeRedis()
        store = RedisStore("redis://unused", hash_key="agent-test", client=client)
        await store.set({"agentId": "abc1"})

        await store.remove(["agentId"])
        await store.close()

        assert client.hashes["agent-test"] == {}
        assert client.closed is True


def test_create_store_picks_backend(tmp_path: Path):
    assert isinstance(create_store(make_settings(store_backend="memory")), MemoryStore)
    assert isinstance(
        create_store(make_settings(store_backend="file", store_path=tmp_path / "s.json")), JsonFileStore
    )
    assert isinstance(
        create_store(make_settings(store_backend="redis", redis_url="redis://localhost:6379/0")), RedisStore
    )


def test_create_store_requires_redis_url():
    settings = make_settings()
    settings.store_backend = "redis"

    with pytest.raises(ConfigurationError):
        create_store(settings)
