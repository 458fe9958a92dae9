"""
Storage abstraction layer for SealedGallery.

Persists the node state snapshot (permission store, payment ledger and
sealed records) to a pluggable backend:

- JSON file (default)
- Memory (for testing)

The sealing master key is never part of the snapshot.

Usage:
    from storage import get_storage_backend

    storage = get_storage_backend()
    storage.save_state(node.to_dict())
    data = storage.load_state()
"""

import os

from storage.base import (
    StorageBackend,
    StorageError,
    StorageReadError,
    StorageWriteError,
)
from storage.json_file import JSONFileStorage
from storage.memory import MemoryStorage

__all__ = [
    "JSONFileStorage",
    "MemoryStorage",
    "StorageBackend",
    "StorageError",
    "StorageReadError",
    "StorageWriteError",
    "get_storage_backend",
]


def get_storage_backend(backend_type: str | None = None, data_file: str | None = None) -> StorageBackend:
    """
    Get the configured storage backend.

    Environment variables:
        STORAGE_BACKEND: Backend type ("json", "memory")
        GALLERY_DATA_FILE: Path for JSON file storage (default: gallery_state.json)

    Returns:
        Configured StorageBackend instance
    """
    backend_type = (backend_type or os.getenv("STORAGE_BACKEND", "json")).lower()

    if backend_type == "json":
        return JSONFileStorage(data_file or os.getenv("GALLERY_DATA_FILE", "gallery_state.json"))

    elif backend_type == "memory":
        return MemoryStorage()

    else:
        raise StorageError(f"Unknown storage backend: {backend_type}")
