"""
SealedGallery - Ciphertext Blob Stores

Content-addressed storage for encrypted content packages. The store only
ever sees ciphertext; it is not trusted with anything else.

Implementations:
- MemoryBlobStore: in-process dict with "pseudo-" handles (demo / tests)
- DirectoryBlobStore: one file per blob, named by the SHA-256 of its bytes
- IPFSBlobStore: Kubo HTTP API (/api/v0/add, /api/v0/cat)

Unknown handles raise BlobNotFoundError. Transport failures raise
BlobStoreUnavailableError, which callers may retry.
"""

import hashlib
import logging
import os
import re
import secrets
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Any

import requests

from errors import BlobNotFoundError, BlobStoreUnavailableError, InvalidInputError

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """store(bytes) -> handle, fetch(handle) -> bytes."""

    @abstractmethod
    def store(self, data: bytes) -> str:
        pass

    @abstractmethod
    def fetch(self, handle: str) -> bytes:
        pass

    def exists(self, handle: str) -> bool:
        try:
            self.fetch(handle)
        except BlobNotFoundError:
            return False
        return True

    def get_info(self) -> dict[str, Any]:
        return {"backend": type(self).__name__}


def _check_data(data: bytes) -> bytes:
    if not isinstance(data, (bytes, bytearray)):
        raise InvalidInputError("Blob data must be bytes")
    return bytes(data)


class MemoryBlobStore(BlobStore):
    """Pseudo-IPFS kept in memory. Handles are unique per store() call."""

    def __init__(self):
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def store(self, data: bytes) -> str:
        data = _check_data(data)
        with self._lock:
            handle = "pseudo-" + secrets.token_hex(16)
            while handle in self._blobs:
                handle = "pseudo-" + secrets.token_hex(16)
            self._blobs[handle] = data
        return handle

    def fetch(self, handle: str) -> bytes:
        with self._lock:
            data = self._blobs.get(handle)
        if data is None:
            raise BlobNotFoundError(f"Blob not found: {handle}")
        return data

    def exists(self, handle: str) -> bool:
        with self._lock:
            return handle in self._blobs

    def get_info(self) -> dict[str, Any]:
        with self._lock:
            return {"backend": "memory", "blob_count": len(self._blobs)}


_DIGEST_HANDLE = re.compile(r"^sha256-([0-9a-f]{64})$")


class DirectoryBlobStore(BlobStore):
    """
    Content-addressed files on disk.

    The handle is "sha256-<hex digest>", so storing the same bytes twice
    yields the same handle and a single file.
    """

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path_for(self, handle: str) -> str:
        match = _DIGEST_HANDLE.match(handle) if isinstance(handle, str) else None
        if not match:
            raise BlobNotFoundError(f"Not a content-addressed handle: {handle}")
        return os.path.join(self.directory, match.group(1))

    def store(self, data: bytes) -> str:
        data = _check_data(data)
        digest = hashlib.sha256(data).hexdigest()
        handle = f"sha256-{digest}"
        path = self._path_for(handle)
        if os.path.exists(path):
            return handle

        # Write to temp file then rename for atomicity
        fd, temp_path = tempfile.mkstemp(dir=self.directory, prefix=".blob_")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(temp_path, path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise BlobStoreUnavailableError(f"Failed to write blob: {e}") from e

        logger.debug("Stored blob %s (%d bytes)", handle, len(data))
        return handle

    def fetch(self, handle: str) -> bytes:
        path = self._path_for(handle)
        try:
            with open(path, "rb") as f:
                data = f.read()
        except FileNotFoundError as e:
            raise BlobNotFoundError(f"Blob not found: {handle}") from e
        except OSError as e:
            raise BlobStoreUnavailableError(f"Failed to read blob: {e}") from e

        if hashlib.sha256(data).hexdigest() != handle[len("sha256-"):]:
            # a corrupted file is as good as missing
            raise BlobNotFoundError(f"Blob content does not match handle: {handle}")
        return data

    def exists(self, handle: str) -> bool:
        try:
            return os.path.exists(self._path_for(handle))
        except BlobNotFoundError:
            return False

    def get_info(self) -> dict[str, Any]:
        return {"backend": "directory", "directory": self.directory}


class IPFSBlobStore(BlobStore):
    """
    Kubo HTTP API client.

    Args:
        api_url: Base URL of the Kubo API, e.g. http://127.0.0.1:5001
        timeout: Per-request timeout in seconds
    """

    def __init__(self, api_url: str = "http://127.0.0.1:5001", timeout: float = 30.0):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def _post(self, path: str, **kwargs) -> requests.Response:
        url = self.api_url + path
        try:
            response = requests.post(url, timeout=self.timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise BlobStoreUnavailableError(f"IPFS API unreachable at {url}: {e}") from e
        if response.status_code in (502, 503, 504):
            raise BlobStoreUnavailableError(f"IPFS API returned {response.status_code}")
        return response

    def store(self, data: bytes) -> str:
        data = _check_data(data)
        response = self._post("/api/v0/add", files={"file": ("blob", data)})
        if not response.ok:
            raise BlobStoreUnavailableError(
                f"IPFS add failed ({response.status_code}): {response.text[:200]}"
            )
        try:
            cid = response.json().get("Hash")
        except ValueError as e:
            raise BlobStoreUnavailableError("IPFS add returned a non-JSON response") from e
        if not cid:
            raise BlobStoreUnavailableError("IPFS add response carried no Hash")
        logger.debug("Added blob %s to IPFS", cid)
        return cid

    def fetch(self, handle: str) -> bytes:
        if not isinstance(handle, str) or not handle:
            raise BlobNotFoundError(f"Blob not found: {handle}")
        response = self._post("/api/v0/cat", params={"arg": handle})
        if not response.ok:
            # Kubo answers unresolvable paths with a 500 and an error message
            raise BlobNotFoundError(f"Blob not found: {handle}", {"status": response.status_code})
        return response.content

    def get_info(self) -> dict[str, Any]:
        return {"backend": "ipfs", "api_url": self.api_url}


def get_blob_store(backend: str | None = None, **kwargs) -> BlobStore:
    """
    Blob store factory.

    Args:
        backend: "memory", "directory" or "ipfs"; defaults to BLOB_BACKEND
        **kwargs: directory / api_url / timeout overrides

    Environment Variables:
        BLOB_BACKEND: memory (default), directory, ipfs
        BLOB_DIR: directory for the directory backend (default: blobs)
        IPFS_API_URL: Kubo API URL (default: http://127.0.0.1:5001)
    """
    backend = (backend or os.getenv("BLOB_BACKEND", "memory")).lower()

    if backend == "memory":
        return MemoryBlobStore()
    if backend == "directory":
        return DirectoryBlobStore(kwargs.get("directory") or os.getenv("BLOB_DIR", "blobs"))
    if backend == "ipfs":
        return IPFSBlobStore(
            api_url=kwargs.get("api_url") or os.getenv("IPFS_API_URL", "http://127.0.0.1:5001"),
            timeout=kwargs.get("timeout", 30.0),
        )
    raise InvalidInputError(f"Unknown blob backend: {backend}. Valid options: memory, directory, ipfs")
