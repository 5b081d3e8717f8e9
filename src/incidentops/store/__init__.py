"""
Incident persistence backends
"""

from ..config import StorageConfig
from .base import IncidentStore
from .memory import MemoryIncidentStore
from .redis_store import RedisIncidentStore


def create_store(config: StorageConfig) -> IncidentStore:
    """Build the configured store backend"""
    backend = config.backend.lower()
    if backend == "memory":
        return MemoryIncidentStore(max_size=config.max_incidents)
    if backend == "redis":
        return RedisIncidentStore(
            host=config.redis_host,
            port=config.redis_port,
            db=config.redis_db,
            password=config.redis_password,
            key_prefix=config.key_prefix,
        )
    raise ValueError(f"Unknown storage backend: {config.backend}")


__all__ = ["IncidentStore", "MemoryIncidentStore", "RedisIncidentStore", "create_store"]
