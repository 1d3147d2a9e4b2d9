from enum import Enum


class StoreType(Enum):
    IN_MEMORY = "in_memory"
    REDIS = "redis"
