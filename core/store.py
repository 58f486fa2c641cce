import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)

STORE_PREFIX = "shard:store"


class SharedStore:
    """
    Durable key/value state shared by the whole pool.
    Read-many, write-rare: last writer wins, no fencing.
    """

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError


class RedisStore(SharedStore):
    def __init__(self, redis, prefix: str = STORE_PREFIX):
        self.redis = redis
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get(self._key(key))

    async def set(self, key: str, value: str) -> None:
        await self.redis.set(self._key(key), value)
        logger.debug(f"Store {key} set")

    async def delete(self, key: str) -> None:
        await self.redis.delete(self._key(key))
        logger.debug(f"Store {key} cleared")


class MemoryStore(SharedStore):
    """In-process store, shared between simulated workers in tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)
