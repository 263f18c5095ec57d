"""Key/value storage engines.

The registry only needs get, set and delete of string values. MemoryStorage keeps
values for the life of the process; RedisStorage namespaces keys under a prefix.
"""

from abc import ABC, abstractmethod
import time
from typing import Dict, Optional, Tuple

import redis.asyncio as redis


class KeyValueStorage(ABC):
    """String key/value store contract."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """
        Store a value.

        Args:
            key: Storage key
            value: String value
            ttl: Optional lifetime in seconds
        """
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        pass


class MemoryStorage(KeyValueStorage):
    """In-process storage, used in tests and when no Redis is configured."""

    def __init__(self) -> None:
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._values[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl if ttl is not None else None
        self._values[key] = (value, expires_at)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._values.pop(key, None)


class RedisStorage(KeyValueStorage):
    """Redis-backed storage. Keys are stored as {namespace}:{key}."""

    def __init__(self, redis_client: redis.Redis, namespace: str) -> None:
        self.redis_client = redis_client
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[str]:
        value = await self.redis_client.get(self._key(key))
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self.redis_client.set(self._key(key), value, ex=ttl)

    async def delete(self, *keys: str) -> None:
        if len(keys) == 0:
            return
        await self.redis_client.delete(*[self._key(key) for key in keys])
