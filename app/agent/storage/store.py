"""
Persistent key-value storage for agent state.

The agent persists its identity, statistics, connection status and the
resource pool's handle list so they survive process restarts. Three
backends share one interface: an in-process dict, a JSON file for local
runs, and a Redis hash for containerised deployments.
"""

import asyncio
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..config.settings import AgentSettings
from ..core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

Changes = Dict[str, Tuple[Any, Any]]
ChangeListener = Callable[[Changes], None]

_MISSING = object()


class KeyValueStore(ABC):
    """
    Async get/set/remove store with change notifications.

    Listeners receive ``{key: (old_value, new_value)}``; a removed key is
    reported with ``new_value`` set to ``None``.
    """

    def __init__(self) -> None:
        self._listeners: List[ChangeListener] = []

    @abstractmethod
    async def _read(self, keys: List[str]) -> Dict[str, Any]:
        """Return values for the keys that exist"""

    @abstractmethod
    async def _write(self, mapping: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def _delete(self, keys: List[str]) -> None:
        pass

    async def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        return await self._read(list(keys))

    async def set(self, mapping: Dict[str, Any]) -> None:
        if not mapping:
            return
        previous = await self._read(list(mapping.keys()))
        await self._write(dict(mapping))
        self._notify({key: (previous.get(key), value) for key, value in mapping.items()})

    async def remove(self, keys: Iterable[str]) -> None:
        key_list = list(keys)
        if not key_list:
            return
        previous = await self._read(key_list)
        await self._delete(key_list)
        self._notify({key: (value, None) for key, value in previous.items()})

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, changes: Changes) -> None:
        if not changes:
            return
        for listener in list(self._listeners):
            try:
                listener(changes)
            except Exception as e:
                logger.error(f"Store change listener failed: {e}")

    async def close(self) -> None:
        pass


class MemoryStore(KeyValueStore):
    """In-process store, used for tests and ephemeral agents"""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        super().__init__()
        self._data: Dict[str, Any] = dict(initial or {})

    async def _read(self, keys: List[str]) -> Dict[str, Any]:
        return {key: self._data[key] for key in keys if key in self._data}

    async def _write(self, mapping: Dict[str, Any]) -> None:
        self._data.update(mapping)

    async def _delete(self, keys: List[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._data)


class JsonFileStore(KeyValueStore):
    """
    File-backed store for local runs.

    The whole document is rewritten on every change through a temporary
    file and ``os.replace`` so a crash never leaves a half-written file.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._cache: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._cache is not None:
            return self._cache
        try:
            if not self.path.exists():
                self._cache = {}
            else:
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                self._cache = data if isinstance(data, dict) else {}
        except json.JSONDecodeError as e:
            logger.error(f"Error reading store file {self.path}: {e}")
            self._cache = {}
        return self._cache

    def _flush(self, data: Dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp_path, self.path)

    async def _read(self, keys: List[str]) -> Dict[str, Any]:
        with self._lock:
            data = self._load()
            return {key: data[key] for key in keys if key in data}

    async def _write(self, mapping: Dict[str, Any]) -> None:
        with self._lock:
            data = self._load()
            data.update(mapping)
            self._flush(data)

    async def _delete(self, keys: List[str]) -> None:
        with self._lock:
            data = self._load()
            changed = False
            for key in keys:
                if data.pop(key, _MISSING) is not _MISSING:
                    changed = True
            if changed:
                self._flush(data)


class RedisStore(KeyValueStore):
    """Store backed by a single Redis hash; values are JSON-encoded"""

    def __init__(self, redis_url: str, hash_key: str = "crawl-agent", client: Optional[Any] = None):
        super().__init__()
        self.redis_url = redis_url
        self.hash_key = hash_key
        self._client = client
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> Any:
        async with self._client_lock:
            if self._client is None:
                self._client = aioredis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    health_check_interval=30,
                )
            return self._client

    async def _read(self, keys: List[str]) -> Dict[str, Any]:
        if not keys:
            return {}
        client = await self._ensure_client()
        values = await client.hmget(self.hash_key, keys)
        result: Dict[str, Any] = {}
        for key, raw in zip(keys, values):
            if raw is None:
                continue
            try:
                result[key] = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring non-JSON value for {key} in {self.hash_key}")
        return result

    async def _write(self, mapping: Dict[str, Any]) -> None:
        client = await self._ensure_client()
        encoded = {key: json.dumps(value, default=str) for key, value in mapping.items()}
        await client.hset(self.hash_key, mapping=encoded)

    async def _delete(self, keys: List[str]) -> None:
        client = await self._ensure_client()
        await client.hdel(self.hash_key, *keys)

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except RedisError as e:
                logger.warning(f"Error closing Redis store: {e}")
            self._client = None


def create_store(settings: AgentSettings) -> KeyValueStore:
    """
    Factory function to create the store configured for this environment.

    Args:
        settings: AgentSettings instance

    Returns:
        MemoryStore, JsonFileStore or RedisStore
    """
    if settings.store_backend == "memory":
        return MemoryStore()
    if settings.store_backend == "file":
        return JsonFileStore(settings.store_path)
    if settings.store_backend == "redis":
        if not settings.redis_url:
            raise ConfigurationError("redis_url is required for the redis store backend")
        return RedisStore(settings.redis_url, settings.redis_key)
    raise ConfigurationError(f"Unknown store backend: {settings.store_backend}")
