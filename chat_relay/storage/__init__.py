from ..types import StorageConfig
from .base import RelayStore
from .filesystem import FilesystemStore
from .sqlite import SQLiteStore


def create_store(config: StorageConfig) -> RelayStore:
    """Instantiate the backend named by *config*."""
    if config.backend == "sqlite":
        return SQLiteStore(db_path=config.sqlite_path)
    if config.backend == "filesystem":
        return FilesystemStore(root=config.root)
    raise ValueError(f"Unknown storage backend: {config.backend}")


__all__ = ["FilesystemStore", "RelayStore", "SQLiteStore", "create_store"]
