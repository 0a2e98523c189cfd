"""
Persistence for actions, executions, escalations and audit records
"""

from ..config import StorageConfig
from ..errors import ConfigurationError
from .base import StorageBackend
from .memory import MemoryStorage
from .redis_store import RedisStorage

__all__ = [
    "StorageBackend",
    "MemoryStorage",
    "RedisStorage",
    "create_storage",
]


def create_storage(config: StorageConfig) -> StorageBackend:
    """Build the backend named by `config.backend`"""
    if config.backend == "memory":
        return MemoryStorage()
    if config.backend == "redis":
        return RedisStorage(
            host=config.host,
            port=config.port,
            db=config.db,
            password=config.password,
            key_prefix=config.key_prefix,
            socket_timeout=config.socket_timeout,
        )
    raise ConfigurationError(f"Unknown storage backend: {config.backend}")
