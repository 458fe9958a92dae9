"""
SealedGallery - Content Session

End-to-end listing, purchase and unlock workflows on top of the cipher, key
material, permission store, key-release protocol and blob store.

Listing:
    new secret -> derive key -> encrypt -> store ciphertext -> seal secret -> list

Unlocking:
    (purchase if not yet authorized) -> signed key request -> fetch -> decrypt

A failing step aborts the rest of the workflow. Steps already committed, such
as a purchase, are not reversed; the error reaches the caller unchanged and
a later purchase_and_unlock() picks up from the existing permission.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from authorization import (
    DEFAULT_MAX_VALIDITY_SECONDS,
    DEFAULT_VALIDITY_SECONDS,
    AuthorityClient,
    SessionKeypair,
    build_request,
    open_response,
    sign_request,
)
from blob_store import BlobStore
from content_cipher import decrypt_content, detect_mime_type, encrypt_content, key_to_hex
from errors import BlobStoreUnavailableError
from identity import WalletIdentity
from key_material import derive_key, generate_identity_secret
from monitoring import metrics
from retry import RetryConfig, retry_call
from sealed_key_store import SealedKeyStore
from sealing import SealingBackend
from typed_data import Domain

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListingReceipt:
    """What a creator gets back from listing."""

    item_id: int
    ciphertext_handle: str
    sealed_secret: str
    content_key_hex: str


@dataclass(frozen=True)
class UnlockedContent:
    """Decrypted content and the key that opened it."""

    item_id: int
    data: bytes
    mime_type: str
    content_key_hex: str


class ContentSession:
    """
    Orchestrates the creator and buyer workflows.

    Args:
        store: Permission state machine
        sealing: Sealed-value backend the secrets are written to
        blob_store: Where ciphertext packages live
        authority: Client for the key-release authority
        domain: Signing domain for key requests
        validity_seconds: Validity window of each key request
        retry_config: Backoff for blob fetches
        clock: Returns the current unix time
    """

    def __init__(
        self,
        store: SealedKeyStore,
        sealing: SealingBackend,
        blob_store: BlobStore,
        authority: AuthorityClient,
        domain: Domain | None = None,
        validity_seconds: int = DEFAULT_VALIDITY_SECONDS,
        max_validity_seconds: int = DEFAULT_MAX_VALIDITY_SECONDS,
        retry_config: RetryConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.sealing = sealing
        self.blob_store = blob_store
        self.authority = authority
        self.domain = domain
        self.validity_seconds = validity_seconds
        self.max_validity_seconds = max_validity_seconds
        self.retry_config = retry_config or RetryConfig()
        self._clock = clock

    def list_content(self, creator: WalletIdentity, plaintext: bytes) -> ListingReceipt:
        """
        Encrypt content under a fresh per-item key and list it.

        Returns:
            ListingReceipt with the new item id and handles
        """
        secret = generate_identity_secret()
        key = derive_key(secret)
        package = encrypt_content(plaintext, key)

        ciphertext_handle = self.blob_store.store(package)
        sealed_secret = self.sealing.sealed_write(secret, creator.address)
        item_id = self.store.list_item(creator.address, ciphertext_handle, sealed_secret)

        logger.info("Listed %d bytes as item %d", len(plaintext), item_id)
        return ListingReceipt(
            item_id=item_id,
            ciphertext_handle=ciphertext_handle,
            sealed_secret=sealed_secret,
            content_key_hex=key_to_hex(key),
        )

    def purchase_and_unlock(self, buyer: WalletIdentity, item_id: int) -> UnlockedContent:
        """
        Buy access at the item's price unless already authorized, then unlock.

        Re-checking authorization first means a retry after a lost
        confirmation never pays twice.
        """
        item = self.store.get_item(item_id)
        if self.store.is_authorized(item.item_id, buyer.address):
            logger.info("%s already authorized for item %d; skipping payment", buyer.address, item.item_id)
        else:
            self.store.purchase(item.item_id, buyer.address, item.price)
        return self.unlock(buyer, item.item_id)

    def request_secret(self, principal: WalletIdentity, item_id: int) -> int:
        """Run the key-release exchange and return the raw identity secret."""
        item = self.store.get_item(item_id)
        session = SessionKeypair()
        typed = build_request(
            principal.address,
            item.item_id,
            item.sealed_secret,
            session.public_key_bytes,
            issued_at=int(self._clock()),
            duration_seconds=self.validity_seconds,
            domain=self.domain,
            max_duration_seconds=self.max_validity_seconds,
        )
        response = self.authority.submit(sign_request(principal, typed))
        return open_response(response, session)

    def unlock(self, principal: WalletIdentity, item_id: int) -> UnlockedContent:
        """
        Obtain the key for an item the principal is authorized for and decrypt it.

        Raises:
            NotAuthorizedError: The principal holds no permission
            BlobNotFoundError: The ciphertext is gone from the blob store
            IntegrityError: The ciphertext does not open under the released key
        """
        item = self.store.get_item(item_id)
        key = derive_key(self.request_secret(principal, item.item_id))

        try:
            package = retry_call(
                self.blob_store.fetch,
                args=(item.ciphertext_handle,),
                config=self.retry_config,
                circuit_breaker_name="blob_store",
            )
        except ConnectionError as e:
            raise BlobStoreUnavailableError(str(e)) from e

        data = decrypt_content(package, key)
        metrics.increment("unlocks_total")
        logger.info("Item %d unlocked by %s", item.item_id, principal.address)
        return UnlockedContent(
            item_id=item.item_id,
            data=data,
            mime_type=detect_mime_type(data),
            content_key_hex=key_to_hex(key),
        )
