import asyncio
import bisect
import json
from typing import Any, Dict, Optional

from blueprint_sync.config.key_value_store import KeyValueStore, QueryPage
from blueprint_sync.utils.logger import create_logger

logger = create_logger("in_memory_store")


class InMemoryKeyValueStore(KeyValueStore[Any]):
    """
    Process-local key-value store.

    Values are JSON round-tripped on write and read so callers never share
    mutable structures with the store, matching what a networked backend does.
    TTLs are accepted for interface compatibility and ignored.
    """

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        logger.debug("In-memory store initialized")

    async def create_key(
        self, key: str, value: Any, overwrite: bool = True, ttl: Optional[int] = None
    ) -> bool:
        async with self._lock:
            if not overwrite and key in self._data:
                logger.debug("Key '%s' already exists, skipping creation as overwrite is False.", key)
                return False
            self._data[key] = json.dumps(value)
            return True

    async def get_key(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def delete_key(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def query(
        self, prefix: str, cursor: Optional[str] = None, limit: int = 100
    ) -> QueryPage[Any]:
        # The cursor is the last key of the previous page; keys are walked in sorted order
        keys = sorted(k for k in self._data if k.startswith(prefix))
        start = bisect.bisect_right(keys, cursor) if cursor else 0
        window = keys[start:start + limit]

        results = []
        for key in window:
            raw = self._data.get(key)
            if raw is not None:
                results.append((key, json.loads(raw)))

        next_cursor = window[-1] if start + limit < len(keys) and window else None
        return QueryPage(results=results, next_cursor=next_cursor)

    async def close(self) -> None:
        logger.debug("In-memory store closed")
