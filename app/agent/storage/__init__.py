"""
Persistent storage for agent state.

Provides the key-value store the agent uses to keep its identity,
statistics and resource pool handles across restarts.
"""

from .store import JsonFileStore, KeyValueStore, MemoryStore, RedisStore, create_store

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
    "RedisStore",
    "create_store",
]
