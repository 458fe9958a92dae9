"""
In-memory storage backend, for tests and ephemeral nodes.
"""

import json
import threading
from typing import Any

from storage.base import StorageBackend, StorageWriteError


class MemoryStorage(StorageBackend):
    """
    Keeps the last snapshot as a JSON string in process memory.

    Holding the serialized form means a snapshot the file backend could not
    write is rejected here too, and callers never share mutable state with
    the store.
    """

    def __init__(self):
        self._document: str | None = None
        self._lock = threading.Lock()
        self.save_count = 0

    def load_state(self) -> dict[str, Any] | None:
        with self._lock:
            document = self._document
        return None if document is None else json.loads(document)

    def save_state(self, state: dict[str, Any]) -> None:
        try:
            document = json.dumps(state)
        except (TypeError, ValueError) as e:
            raise StorageWriteError(f"State is not JSON-serializable: {e}") from e
        with self._lock:
            self._document = document
            self.save_count += 1

    def is_available(self) -> bool:
        return True

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        with self._lock:
            info["has_data"] = self._document is not None
            info["save_count"] = self.save_count
        return info

    def clear(self) -> None:
        with self._lock:
            self._document = None
