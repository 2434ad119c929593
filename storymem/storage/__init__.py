"""Durable storage for index blobs, memory records and dimension records."""

from storymem.storage.base import MemoryStorage
from storymem.storage.memory_store import InMemoryStorage
from storymem.storage.sqlite_store import SQLiteStorage

__all__ = [
    "MemoryStorage",
    "InMemoryStorage",
    "SQLiteStorage",
    "create_storage",
]


def create_storage(config=None) -> MemoryStorage:
    """
    Factory: create the storage backend named by config.

    Args:
        config: Optional StorageConfig. If None, uses SQLite at the default path.

    Returns:
        A MemoryStorage instance.
    """
    from storymem.config.schema import StorageConfig

    config = config or StorageConfig()
    if config.backend == "memory":
        return InMemoryStorage()
    return SQLiteStorage(config.resolved_path)
