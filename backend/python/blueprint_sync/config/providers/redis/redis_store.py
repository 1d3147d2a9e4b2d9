import asyncio
import threading
from typing import Callable, Dict, Generic, Optional, TypeVar

import redis.asyncio as redis  # type: ignore
from redis.asyncio.retry import Retry  # type: ignore
from redis.backoff import ExponentialBackoff  # type: ignore
from redis.exceptions import ConnectionError as RedisConnectionError  # type: ignore
from redis.exceptions import TimeoutError as RedisTimeoutError  # type: ignore

from blueprint_sync.config.key_value_store import KeyValueStore, QueryPage
from blueprint_sync.utils.logger import create_logger

logger = create_logger("redis_store")

T = TypeVar("T")

# Retry configuration
MAX_RETRIES = 5
RETRY_BASE_DELAY = 0.5  # seconds
RETRY_MAX_DELAY = 30.0  # seconds


class RedisDistributedKeyValueStore(KeyValueStore[T], Generic[T]):
    """
    Redis-backed key-value store for reconciliation state.

    Every key is namespaced with key_prefix. Prefix queries use SCAN, so
    the cursor returned by query() is Redis's own scan cursor and pages
    carry no ordering guarantee.

    Attributes:
        serializer: Function to convert values to bytes
        deserializer: Function to convert bytes back to values
        key_prefix: Prefix for all keys stored in Redis
    """

    def __init__(
        self,
        serializer: Callable[[T], bytes],
        deserializer: Callable[[bytes], T],
        host: str,
        port: int,
        password: Optional[str] = None,
        db: int = 0,
        key_prefix: str = "blueprint:kv:",
        connect_timeout: float = 10.0,
    ) -> None:
        logger.debug("Initializing Redis store")
        logger.debug("   - Host: %s", host)
        logger.debug("   - Port: %s", port)
        logger.debug("   - DB: %s", db)
        logger.debug("   - Key prefix: %s", key_prefix)

        self.serializer = serializer
        self.deserializer = deserializer
        self.key_prefix = key_prefix

        self._host = host
        self._port = port
        self._password = password
        self._db = db
        self._connect_timeout = connect_timeout

        # One client per thread so a client is never shared across event loops
        self._clients: Dict[int, redis.Redis] = {}
        self._clients_lock = threading.Lock()

    def _get_client(self) -> redis.Redis:
        thread_id = threading.get_ident()

        with self._clients_lock:
            if thread_id not in self._clients:
                logger.debug("Creating new Redis client for thread %s", thread_id)
                retry = Retry(
                    ExponentialBackoff(cap=RETRY_MAX_DELAY, base=RETRY_BASE_DELAY),
                    retries=MAX_RETRIES,
                )
                self._clients[thread_id] = redis.Redis(
                    host=self._host,
                    port=self._port,
                    password=self._password,
                    db=self._db,
                    socket_connect_timeout=self._connect_timeout,
                    socket_timeout=self._connect_timeout,
                    decode_responses=False,
                    retry=retry,
                    retry_on_error=[RedisConnectionError, RedisTimeoutError, ConnectionError, OSError],
                    health_check_interval=30,
                )

            return self._clients[thread_id]

    def _build_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _strip_prefix(self, key) -> str:
        if isinstance(key, bytes):
            key = key.decode("utf-8")
        if key.startswith(self.key_prefix):
            return key[len(self.key_prefix):]
        return key

    async def health_check(self) -> bool:
        """
        Check if the Redis connection is healthy.

        Returns:
            True if connection is healthy, False otherwise.
        """
        try:
            result = await self._get_client().ping()
            return result is True
        except Exception as e:
            logger.error("Redis health check failed: %s", str(e))
            return False

    async def wait_for_connection(self, timeout: float = 60.0) -> bool:
        """Ping Redis with exponential backoff until it answers or timeout elapses."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        retry_count = 0

        while (loop.time() - start_time) < timeout:
            try:
                if await self._get_client().ping() is True:
                    logger.info("✅ Redis connection established successfully")
                    return True
            except Exception as e:
                retry_count += 1
                delay = min(RETRY_BASE_DELAY * (2 ** (retry_count - 1)), RETRY_MAX_DELAY)
                remaining = timeout - (loop.time() - start_time)
                if remaining <= 0:
                    break
                logger.warning(
                    "Redis connection attempt %d failed: %s. Retrying in %.1f seconds...",
                    retry_count,
                    str(e),
                    min(delay, remaining),
                )
                await asyncio.sleep(min(delay, remaining))

        logger.error("❌ Failed to establish Redis connection within %.1f seconds", timeout)
        return False

    async def create_key(
        self, key: str, value: T, overwrite: bool = True, ttl: Optional[int] = None
    ) -> bool:
        full_key = self._build_key(key)
        logger.debug("Writing key: %s", full_key)

        try:
            serialized_value = self.serializer(value)
            if overwrite:
                await self._get_client().set(full_key, serialized_value, ex=ttl)
                return True

            was_set = await self._get_client().set(full_key, serialized_value, ex=ttl, nx=True)
            if not was_set:
                logger.debug("Key '%s' already exists, skipping creation as overwrite is False.", key)
                return False
            return True

        except Exception as e:
            logger.error("Failed to create key %s: %s", key, str(e))
            raise ConnectionError(f"Failed to create key: {str(e)}")

    async def get_key(self, key: str) -> Optional[T]:
        full_key = self._build_key(key)

        try:
            value_bytes = await self._get_client().get(full_key)
        except Exception as e:
            logger.error("Failed to get key %s: %s", key, str(e))
            raise ConnectionError(f"Failed to get key: {str(e)}")

        if value_bytes is None:
            return None
        try:
            return self.deserializer(value_bytes)
        except ValueError as e:
            logger.error("Failed to deserialize value for key %s: %s", key, str(e))
            return None

    async def delete_key(self, key: str) -> bool:
        full_key = self._build_key(key)
        logger.debug("Deleting key: %s", full_key)

        try:
            result = await self._get_client().delete(full_key)
            return result > 0
        except Exception as e:
            logger.error("Failed to delete key %s: %s", key, str(e))
            raise ConnectionError(f"Failed to delete key: {str(e)}")

    async def query(
        self, prefix: str, cursor: Optional[str] = None, limit: int = 100
    ) -> QueryPage[T]:
        pattern = f"{self._build_key(prefix)}*"
        scan_cursor = int(cursor) if cursor else 0

        try:
            client = self._get_client()
            raw_keys: list = []
            # SCAN may return short or empty batches, keep going until a page is filled
            while True:
                scan_cursor, batch = await client.scan(cursor=scan_cursor, match=pattern, count=limit)
                raw_keys.extend(batch)
                if scan_cursor == 0 or len(raw_keys) >= limit:
                    break

            results = []
            if raw_keys:
                values = await client.mget(raw_keys)
                for raw_key, value_bytes in zip(raw_keys, values):
                    if value_bytes is None:
                        continue
                    try:
                        results.append((self._strip_prefix(raw_key), self.deserializer(value_bytes)))
                    except ValueError as e:
                        logger.error("Failed to deserialize value for key %s: %s", raw_key, str(e))

            next_cursor = str(scan_cursor) if scan_cursor != 0 else None
            return QueryPage(results=results, next_cursor=next_cursor)

        except Exception as e:
            logger.error("Failed to query prefix %s: %s", prefix, str(e))
            raise ConnectionError(f"Failed to query prefix: {str(e)}")

    async def close(self) -> None:
        """Close every per-thread Redis client."""
        logger.debug("Closing Redis store")
        with self._clients_lock:
            for thread_id, client in self._clients.items():
                try:
                    await client.close()
                    logger.debug("Closed Redis client for thread %s", thread_id)
                except Exception as e:
                    logger.warning("Error closing Redis client for thread %s: %s", thread_id, str(e))
            self._clients.clear()
        logger.debug("Redis store closed successfully")
