from .base import ObjectNotFoundError, ObjectStore
from .filesystem import FilesystemObjectStore
from .memory import MemoryObjectStore

__all__ = [
    "FilesystemObjectStore",
    "MemoryObjectStore",
    "ObjectNotFoundError",
    "ObjectStore",
    "build_object_store",
]


def build_object_store(config) -> ObjectStore:
    """Create the backend named by a StorageConfig."""
    if config.backend == "gcs":
        from .gcs import GCSObjectStore
        return GCSObjectStore(config.bucket)
    if config.backend == "memory":
        return MemoryObjectStore()
    return FilesystemObjectStore(root=config.root)
