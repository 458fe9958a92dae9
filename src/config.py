"""
SealedGallery - Configuration

Environment Variables:
    SEALEDGALLERY_ACCESS_PRICE=1000000000000000
    SEALEDGALLERY_CHAIN_ID=31337
    SEALEDGALLERY_CONTRACT_ADDRESS=0x0000000000000000000000000000000000000000
    SEALEDGALLERY_AUTHORITY_URL=             (empty: in-process authority)
    SEALEDGALLERY_AUTHORITY_TIMEOUT=10
    SEALEDGALLERY_VALIDITY_SECONDS=864000
    SEALEDGALLERY_MAX_VALIDITY_SECONDS=31536000
    SEALEDGALLERY_SEALING_KEY=<base64, 32 bytes>
    SEALEDGALLERY_API_KEY=
    SEALEDGALLERY_REQUIRE_AUTH=true
    STORAGE_BACKEND=json|memory
    GALLERY_DATA_FILE=gallery_state.json
    BLOB_BACKEND=memory|directory|ipfs
    BLOB_DIR=blobs
    IPFS_API_URL=http://127.0.0.1:5001
    RETRY_*                                  (see retry.py)
"""

import base64
import binascii
import os
from dataclasses import dataclass, field

from authorization import (
    DEFAULT_CHAIN_ID,
    DEFAULT_MAX_VALIDITY_SECONDS,
    DEFAULT_VALIDITY_SECONDS,
    DEFAULT_VERIFYING_CONTRACT,
)
from content_cipher import KEY_SIZE
from errors import InvalidInputError
from retry import RetryConfig
from sealed_key_store import DEFAULT_ACCESS_PRICE


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise InvalidInputError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise InvalidInputError(f"{name} must be a number, got {raw!r}") from e


def _env_sealing_key() -> bytes | None:
    raw = os.getenv("SEALEDGALLERY_SEALING_KEY", "").strip()
    if not raw:
        return None
    try:
        key = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInputError("SEALEDGALLERY_SEALING_KEY must be base64") from e
    if len(key) != KEY_SIZE:
        raise InvalidInputError(f"SEALEDGALLERY_SEALING_KEY must decode to {KEY_SIZE} bytes")
    return key


@dataclass
class GalleryConfig:
    """Settings for one gallery node."""

    access_price: int = DEFAULT_ACCESS_PRICE
    chain_id: int = DEFAULT_CHAIN_ID
    contract_address: str = DEFAULT_VERIFYING_CONTRACT

    # Authority
    authority_url: str = ""
    authority_timeout: float = 10.0
    validity_seconds: int = DEFAULT_VALIDITY_SECONDS
    max_validity_seconds: int = DEFAULT_MAX_VALIDITY_SECONDS
    sealing_key: bytes | None = field(default=None, repr=False)

    # HTTP
    api_key: str = field(default="", repr=False)
    require_auth: bool = True

    # Persistence
    storage_backend: str = "json"
    data_file: str = "gallery_state.json"

    # Blobs
    blob_backend: str = "memory"
    blob_dir: str = "blobs"
    ipfs_api_url: str = "http://127.0.0.1:5001"

    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_env(cls) -> "GalleryConfig":
        """
        Create configuration from environment variables.

        Raises:
            InvalidInputError: If a numeric variable or the sealing key is malformed
        """
        try:
            retry = RetryConfig.from_env()
        except ValueError as e:
            raise InvalidInputError(f"Invalid RETRY_* setting: {e}") from e

        config = cls(
            access_price=_env_int("SEALEDGALLERY_ACCESS_PRICE", DEFAULT_ACCESS_PRICE),
            chain_id=_env_int("SEALEDGALLERY_CHAIN_ID", DEFAULT_CHAIN_ID),
            contract_address=os.getenv(
                "SEALEDGALLERY_CONTRACT_ADDRESS", DEFAULT_VERIFYING_CONTRACT
            ).strip().lower(),
            authority_url=os.getenv("SEALEDGALLERY_AUTHORITY_URL", "").strip(),
            authority_timeout=_env_float("SEALEDGALLERY_AUTHORITY_TIMEOUT", 10.0),
            validity_seconds=_env_int("SEALEDGALLERY_VALIDITY_SECONDS", DEFAULT_VALIDITY_SECONDS),
            max_validity_seconds=_env_int(
                "SEALEDGALLERY_MAX_VALIDITY_SECONDS", DEFAULT_MAX_VALIDITY_SECONDS
            ),
            sealing_key=_env_sealing_key(),
            api_key=os.getenv("SEALEDGALLERY_API_KEY", ""),
            require_auth=os.getenv("SEALEDGALLERY_REQUIRE_AUTH", "true").lower() == "true",
            storage_backend=os.getenv("STORAGE_BACKEND", "json").lower(),
            data_file=os.getenv("GALLERY_DATA_FILE", "gallery_state.json"),
            blob_backend=os.getenv("BLOB_BACKEND", "memory").lower(),
            blob_dir=os.getenv("BLOB_DIR", "blobs"),
            ipfs_api_url=os.getenv("IPFS_API_URL", "http://127.0.0.1:5001"),
            retry=retry,
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.access_price < 0:
            raise InvalidInputError("SEALEDGALLERY_ACCESS_PRICE must not be negative")
        if self.validity_seconds <= 0:
            raise InvalidInputError("SEALEDGALLERY_VALIDITY_SECONDS must be positive")
        if self.validity_seconds > self.max_validity_seconds:
            raise InvalidInputError(
                "SEALEDGALLERY_VALIDITY_SECONDS exceeds SEALEDGALLERY_MAX_VALIDITY_SECONDS"
            )
        if self.authority_timeout <= 0:
            raise InvalidInputError("SEALEDGALLERY_AUTHORITY_TIMEOUT must be positive")
