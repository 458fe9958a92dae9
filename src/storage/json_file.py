"""
JSON file storage backend.

The default backend. The whole node snapshot (items, permissions, purchase
records, ledger balances and sealed records) lives in one JSON document.
Each save goes to a temporary file in the same directory which is then
renamed over the old one, so a crash mid-write leaves the previous
snapshot intact. The file is created owner-only: sealed records are
encrypted but still worth keeping private.
"""

import json
import os
import shutil
import tempfile
import threading
from datetime import datetime
from typing import Any

from storage.base import (
    StorageBackend,
    StorageError,
    StorageReadError,
    StorageWriteError,
)


class JSONFileStorage(StorageBackend):
    """Snapshot in a single JSON file, guarded by a process-local lock."""

    def __init__(self, file_path: str = "gallery_state.json"):
        self.file_path = file_path
        self._lock = threading.Lock()

    @property
    def _directory(self) -> str:
        return os.path.dirname(os.path.abspath(self.file_path))

    def load_state(self) -> dict[str, Any] | None:
        """
        Returns:
            The snapshot, or None when the file is missing or blank

        Raises:
            StorageReadError: Unreadable file, bad JSON, or a non-object document
        """
        with self._lock:
            try:
                with open(self.file_path, encoding="utf-8") as f:
                    text = f.read()
            except FileNotFoundError:
                return None
            except OSError as e:
                raise StorageReadError(f"Cannot read {self.file_path}: {e}") from e

        if not text.strip():
            return None
        try:
            state = json.loads(text)
        except json.JSONDecodeError as e:
            raise StorageReadError(f"{self.file_path} is not valid JSON: {e}") from e
        if not isinstance(state, dict):
            raise StorageReadError(f"{self.file_path} does not hold a JSON object")
        return state

    def save_state(self, state: dict[str, Any]) -> None:
        """
        Raises:
            StorageWriteError: Unserializable state or a failed write
        """
        try:
            document = json.dumps(state, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StorageWriteError(f"State is not JSON-serializable: {e}") from e

        with self._lock:
            fd, temp_path = tempfile.mkstemp(
                prefix=os.path.basename(self.file_path) + ".", suffix=".tmp", dir=self._directory
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(document)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_path, self.file_path)
            except OSError as e:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise StorageWriteError(f"Cannot write {self.file_path}: {e}") from e

    def is_available(self) -> bool:
        return os.path.isdir(self._directory) and os.access(self._directory, os.W_OK)

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info["file_path"] = self.file_path
        try:
            stat = os.stat(self.file_path)
        except FileNotFoundError:
            info["file_exists"] = False
            return info
        info.update({
            "file_exists": True,
            "file_size_bytes": stat.st_size,
            "last_modified": stat.st_mtime,
        })
        return info

    def backup(self, backup_path: str | None = None) -> str:
        """
        Copy the current snapshot aside, by default next to it with a timestamp.

        Raises:
            StorageError: No snapshot yet, or the copy failed
        """
        if backup_path is None:
            backup_path = f"{self.file_path}.{datetime.now():%Y%m%d_%H%M%S}.backup"

        with self._lock:
            if not os.path.exists(self.file_path):
                raise StorageError(f"No snapshot at {self.file_path} to back up")
            try:
                shutil.copy2(self.file_path, backup_path)
            except OSError as e:
                raise StorageError(f"Backup to {backup_path} failed: {e}") from e
        return backup_path
