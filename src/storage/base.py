"""
Storage backend interface and its error types.

A backend holds exactly one thing: the latest node snapshot produced by
GalleryNode.to_dict(). Saving replaces it wholesale.
"""

from abc import ABC, abstractmethod
from typing import Any


class StorageError(Exception):
    """A snapshot could not be read, written or copied."""


class StorageReadError(StorageError):
    pass


class StorageWriteError(StorageError):
    pass


class StorageBackend(ABC):
    """Where a gallery node keeps its snapshot between runs."""

    @abstractmethod
    def load_state(self) -> dict[str, Any] | None:
        """
        Returns:
            The last saved snapshot, or None if nothing has been saved

        Raises:
            StorageReadError: The stored snapshot is unreadable
        """

    @abstractmethod
    def save_state(self, state: dict[str, Any]) -> None:
        """
        Raises:
            StorageWriteError: The snapshot could not be stored
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Whether save_state is expected to succeed right now."""

    def get_info(self) -> dict[str, Any]:
        return {"backend_type": type(self).__name__, "available": self.is_available()}

    def close(self) -> None:
        """Release held resources; a no-op unless a backend holds any."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
