import json
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from blueprint_sync.config.constants.store_type import StoreType
from blueprint_sync.config.key_value_store import KeyValueStore
from blueprint_sync.config.providers.in_memory_store import InMemoryKeyValueStore
from blueprint_sync.config.providers.redis.redis_store import RedisDistributedKeyValueStore
from blueprint_sync.utils.logger import create_logger

logger = create_logger("kv_store_factory")

T = TypeVar("T")


def json_serializer(value: Any) -> bytes:
    return json.dumps(value).encode("utf-8")


def json_deserializer(value: bytes) -> Any:
    return json.loads(value.decode("utf-8"))


@dataclass
class StoreConfig:
    """Configuration for key-value store creation."""

    host: str = "localhost"
    port: int = 6379
    timeout: float = 10.0
    password: Optional[str] = None
    db: int = 0
    key_prefix: str = "blueprint:kv:"


class KeyValueStoreFactory:
    """
    Factory for the reconciliation key-value store.

    The in-memory store needs no configuration. The Redis store needs a
    serializer/deserializer pair and a StoreConfig.
    """

    @staticmethod
    def create_store(
        store_type: StoreType,
        serializer: Optional[Callable[[T], bytes]] = None,
        deserializer: Optional[Callable[[bytes], T]] = None,
        config: Optional[StoreConfig] = None,
    ) -> KeyValueStore[T]:
        """
        Create a new key-value store instance.

        Args:
            store_type: Type of store to create
            serializer: Function to convert values to bytes (required for Redis)
            deserializer: Function to convert bytes back to values (required for Redis)
            config: Optional configuration for the store

        Returns:
            A new key-value store instance

        Raises:
            ValueError: If the store cannot be created
        """
        config = config or StoreConfig()
        logger.debug("🔧 Creating key-value store of type %s", store_type)

        try:
            if store_type == StoreType.IN_MEMORY:
                store = InMemoryKeyValueStore()
                logger.info("✅ In-memory store created successfully")
                return store
            elif store_type == StoreType.REDIS:
                store = KeyValueStoreFactory._create_redis_store(serializer, deserializer, config)
                logger.info("✅ Redis store created successfully")
                return store
            else:
                logger.error("❌ Unsupported store type: %s", store_type)
                raise ValueError(f"Unsupported store type: {store_type}")

        except Exception as e:
            logger.error("❌ Failed to create store: %s (%s)", str(e), type(e).__name__)
            raise ValueError(f"Failed to create store: {str(e)}") from e

    @staticmethod
    def _create_redis_store(
        serializer: Optional[Callable[[T], bytes]],
        deserializer: Optional[Callable[[bytes], T]],
        config: StoreConfig,
    ) -> RedisDistributedKeyValueStore[T]:
        if not serializer or not deserializer:
            logger.error("❌ Missing serializer or deserializer")
            raise ValueError(
                "Serializer and deserializer functions must be provided for Redis store."
            )
        if not callable(serializer) or not callable(deserializer):
            logger.error("❌ Invalid serializer or deserializer type")
            raise TypeError("Serializer and deserializer must be callable functions")

        logger.debug("🔄 Creating Redis store at %s:%s db=%s", config.host, config.port, config.db)
        return RedisDistributedKeyValueStore[T](
            serializer=serializer,
            deserializer=deserializer,
            host=config.host,
            port=config.port,
            password=config.password,
            db=config.db,
            key_prefix=config.key_prefix,
            connect_timeout=config.timeout,
        )
