"""
SealedGallery - Gallery Node

Wires configuration to the components of one running gallery:
sealing backend, payment ledger, permission store, authority, blob store,
content session and state storage.

Usage:
    node = GalleryNode.from_env()
    node.load()
    receipt = node.session.list_content(creator, image_bytes)
    node.save()
"""

import logging
import threading
import time
from typing import Any, Callable

from authorization import (
    AuthorityClient,
    AuthorityService,
    HTTPAuthorityClient,
    LocalAuthorityClient,
    default_domain,
)
from blob_store import BlobStore, get_blob_store
from config import GalleryConfig
from content_session import ContentSession
from errors import InvalidInputError
from payments import PaymentLedger
from sealed_key_store import SealedKeyStore
from sealing import LocalSealingBackend
from storage import StorageBackend, get_storage_backend

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class GalleryNode:
    """
    One gallery deployment.

    Args:
        config: Node settings (defaults to GalleryConfig())
        storage: State storage override
        blob_store: Blob store override
        clock: Returns the current unix time
    """

    def __init__(
        self,
        config: GalleryConfig | None = None,
        storage: StorageBackend | None = None,
        blob_store: BlobStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or GalleryConfig()
        self._save_lock = threading.Lock()

        if self.config.sealing_key is None:
            logger.warning(
                "SEALEDGALLERY_SEALING_KEY not set; using an ephemeral sealing key. "
                "Sealed secrets will not survive a restart."
            )
        self.sealing = LocalSealingBackend(self.config.sealing_key)
        self.ledger = PaymentLedger()
        self.store = SealedKeyStore(self.sealing, self.ledger, self.config.access_price, clock)
        self.domain = default_domain(self.config.chain_id, self.config.contract_address)
        self.authority = AuthorityService(
            self.store,
            self.sealing,
            self.domain,
            clock=clock,
            max_validity_seconds=self.config.max_validity_seconds,
        )

        self.authority_client: AuthorityClient
        if self.config.authority_url:
            self.authority_client = HTTPAuthorityClient(
                self.config.authority_url,
                timeout=self.config.authority_timeout,
                retry_config=self.config.retry,
            )
        else:
            self.authority_client = LocalAuthorityClient(self.authority)

        self.blob_store = blob_store or get_blob_store(
            self.config.blob_backend,
            directory=self.config.blob_dir,
            api_url=self.config.ipfs_api_url,
        )
        self.storage = storage or get_storage_backend(
            self.config.storage_backend, self.config.data_file
        )
        self.session = ContentSession(
            self.store,
            self.sealing,
            self.blob_store,
            self.authority_client,
            domain=self.domain,
            validity_seconds=self.config.validity_seconds,
            max_validity_seconds=self.config.max_validity_seconds,
            retry_config=self.config.retry,
            clock=clock,
        )

    @classmethod
    def from_env(cls, **kwargs) -> "GalleryNode":
        return cls(GalleryConfig.from_env(), **kwargs)

    # ==================== PERSISTENCE ====================

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "store": self.store.to_dict(),
            "ledger": self.ledger.to_dict(),
            "sealing": self.sealing.to_dict(),
        }

    def load_dict(self, data: dict[str, Any]) -> None:
        if data.get("version") != STATE_VERSION:
            raise InvalidInputError(f"Unsupported state version: {data.get('version')}")
        self.sealing.load_dict(data.get("sealing", {}))
        self.ledger.load_dict(data.get("ledger", {}))
        self.store.load_dict(data.get("store", {}))

    def save(self) -> None:
        """
        Persist the node state.

        Snapshot and write happen under one lock so saves land in the order
        their snapshots were taken.

        Raises:
            StorageWriteError: If the backend cannot write
        """
        with self._save_lock:
            self.storage.save_state(self.to_dict())
        logger.debug("Saved state with %d items", self.store.count())

    def load(self) -> bool:
        """
        Restore the last saved state.

        Returns:
            False if nothing was saved yet
        """
        data = self.storage.load_state()
        if data is None:
            return False
        self.load_dict(data)
        logger.info("Loaded state with %d items", self.store.count())
        return True

    def health(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "items": self.store.count(),
            "access_price": self.store.access_price,
            "authority": "remote" if self.config.authority_url else "local",
            "storage": self.storage.get_info(),
            "blob_store": self.blob_store.get_info(),
        }
