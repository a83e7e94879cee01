"""
Persistence for the inventory and the runtime settings.
"""
import structlog

from ..config import StorageConfig
from .blacklist import BlacklistStore
from .query import apply_host_query
from .repository import BaseInventoryRepository, InMemoryInventoryRepository
from .settings import BaseSettingsStore, InMemorySettingsStore, JsonFileSettingsStore, get_settings_store
from .sqlite_repository import SqliteInventoryRepository

logger = structlog.get_logger(__name__)


def get_inventory_repository(storage_config: StorageConfig) -> BaseInventoryRepository:
    """Factory selecting the inventory repository for the configured backend."""
    backend = storage_config.backend.lower()
    if backend == "memory":
        logger.info("Using in-memory inventory repository")
        return InMemoryInventoryRepository()
    if backend == "sqlite":
        logger.info("Using SQLite inventory repository", database_path=str(storage_config.database_path))
        return SqliteInventoryRepository(storage_config.database_path)
    raise ValueError(f"Unsupported inventory backend: {storage_config.backend}")


__all__ = [
    "BaseInventoryRepository",
    "InMemoryInventoryRepository",
    "SqliteInventoryRepository",
    "BaseSettingsStore",
    "InMemorySettingsStore",
    "JsonFileSettingsStore",
    "BlacklistStore",
    "apply_host_query",
    "get_inventory_repository",
    "get_settings_store",
]
