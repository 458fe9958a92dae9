"""
SealedGallery - Sealed Value Backend

The ledger host's sealed-integer primitive: a value stored in a form its
storage authority cannot read, with its own view-permission list.

SealingBackend is the interface the access-control state machine is layered
on. LocalSealingBackend is a conventional encrypted-record-plus-ACL
implementation:
- Values are AES-256-GCM encrypted under a host master key, with the handle
  bound as associated data (records cannot be swapped between handles)
- The only read path is sealed_unseal(), which demands a signed proof naming
  the handle and a principal on the ACL
- Granting view access is idempotent and audited

A proof is any object exposing `typed` (TypedMessage), `signature` and
`public_key` (base64), such as authorization.SignedRequest.
"""

import base64
import binascii
import logging
import secrets
import threading
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

from content_cipher import KEY_SIZE, decrypt_content, encrypt_content
from errors import (
    InvalidInputError,
    NotAuthorizedError,
    NotFoundError,
    SignatureInvalidError,
)
from identity import normalize_address, recover_typed_data_signer
from typed_data import BYTES32_PATTERN

logger = logging.getLogger(__name__)

SEALED_VALUE_MAX = 2**256 - 1

# Newest sealing events kept in memory
MAX_EVENTS = 1000


class SealingBackend(ABC):
    """
    Abstract sealed-value primitive.

    Implementations must never expose a raw value except through
    sealed_unseal() with a valid proof.
    """

    @abstractmethod
    def sealed_write(self, raw_value: int, owner: str) -> str:
        """Seal a 256-bit value for `owner` and return its handle."""
        pass

    @abstractmethod
    def sealed_grant_view(self, handle: str, principal: str) -> bool:
        """
        Allow `principal` to later unseal `handle`.

        Idempotent. Returns True if the grant is new.
        """
        pass

    @abstractmethod
    def sealed_unseal(self, handle: str, principal: str, proof: Any) -> int:
        """Return the raw value if `proof` shows `principal` may view it."""
        pass

    @abstractmethod
    def can_view(self, handle: str, principal: str) -> bool:
        pass

    @abstractmethod
    def owner_of(self, handle: str) -> str:
        pass

    def exists(self, handle: str) -> bool:
        try:
            self.owner_of(handle)
        except NotFoundError:
            return False
        return True


def _check_handle(handle: Any) -> str:
    if not isinstance(handle, str) or not BYTES32_PATTERN.match(handle):
        raise InvalidInputError("Sealed handle must be 0x followed by 64 hex characters")
    return handle.lower()


class LocalSealingBackend(SealingBackend):
    """
    In-process sealed-value store.

    Thread-safe. Records can be snapshotted with to_dict(); the master key is
    never part of the snapshot.
    """

    def __init__(self, master_key: bytes | None = None):
        if master_key is None:
            master_key = secrets.token_bytes(KEY_SIZE)
        if len(master_key) != KEY_SIZE:
            raise InvalidInputError(f"Sealing master key must be {KEY_SIZE} bytes")
        self._master_key = bytes(master_key)
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

        # Audit trail
        self.events: list[dict[str, Any]] = []
        self._max_events = MAX_EVENTS

    def sealed_write(self, raw_value: int, owner: str) -> str:
        if isinstance(raw_value, bool) or not isinstance(raw_value, int):
            raise InvalidInputError("Sealed value must be an integer")
        if not 0 <= raw_value <= SEALED_VALUE_MAX:
            raise InvalidInputError("Sealed value must fit in 256 bits")
        owner = normalize_address(owner)

        with self._lock:
            handle = "0x" + secrets.token_hex(32)
            while handle in self._records:
                handle = "0x" + secrets.token_hex(32)

            package = encrypt_content(
                raw_value.to_bytes(32, "big"), self._master_key, aad=handle.encode("ascii")
            )
            self._records[handle] = {
                "owner": owner,
                "package": package,
                "acl": {owner},
            }
            self._emit_event("ValueSealed", {"handle": handle, "owner": owner})

        logger.debug("Sealed new value %s for %s", handle, owner)
        return handle

    def _get_record(self, handle: str) -> dict[str, Any]:
        record = self._records.get(_check_handle(handle))
        if record is None:
            raise NotFoundError(f"Unknown sealed handle: {handle}")
        return record

    def sealed_grant_view(self, handle: str, principal: str) -> bool:
        principal = normalize_address(principal)
        with self._lock:
            record = self._get_record(handle)
            if principal in record["acl"]:
                return False
            record["acl"].add(principal)
            self._emit_event("ViewGranted", {"handle": handle.lower(), "principal": principal})
        return True

    def can_view(self, handle: str, principal: str) -> bool:
        principal = normalize_address(principal)
        with self._lock:
            return principal in self._get_record(handle)["acl"]

    def owner_of(self, handle: str) -> str:
        with self._lock:
            return self._get_record(handle)["owner"]

    def sealed_unseal(self, handle: str, principal: str, proof: Any) -> int:
        """
        Unseal a value for a principal holding a signed proof.

        Raises:
            SignatureInvalidError: If the proof does not verify or was signed by someone else
            NotAuthorizedError: If the proof is for another handle or the principal lacks view access
            NotFoundError: If the handle is unknown
        """
        handle = _check_handle(handle)
        principal = normalize_address(principal)

        try:
            typed, signature, public_key = proof.typed, proof.signature, proof.public_key
        except AttributeError as e:
            raise SignatureInvalidError("Unseal proof is missing signature material") from e

        signer = recover_typed_data_signer(typed, signature, public_key)
        if signer != principal:
            raise SignatureInvalidError("Unseal proof was signed by a different principal")
        if str(typed.message.get("sealed_handle", "")).lower() != handle:
            raise NotAuthorizedError("Unseal proof does not cover this handle")

        with self._lock:
            record = self._get_record(handle)
            if principal not in record["acl"]:
                raise NotAuthorizedError("Principal has no view access to this sealed value")
            package = record["package"]

        plaintext = decrypt_content(package, self._master_key, aad=handle.encode("ascii"))
        return int.from_bytes(plaintext, "big")

    # ==================== PERSISTENCE ====================

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "records": {
                    handle: {
                        "owner": record["owner"],
                        "package": base64.b64encode(record["package"]).decode("ascii"),
                        "acl": sorted(record["acl"]),
                    }
                    for handle, record in self._records.items()
                }
            }

    def load_dict(self, data: dict[str, Any]) -> None:
        """
        Replace the records with a to_dict() snapshot.

        The snapshot must have been written under the same master key;
        a mismatch surfaces as IntegrityError on the first unseal.
        """
        records = {}
        try:
            for handle, record in (data or {}).get("records", {}).items():
                records[_check_handle(handle)] = {
                    "owner": normalize_address(record["owner"]),
                    "package": base64.b64decode(record["package"], validate=True),
                    "acl": {normalize_address(p) for p in record["acl"]},
                }
        except (KeyError, TypeError, binascii.Error) as e:
            raise InvalidInputError(f"Malformed sealed record snapshot: {e}") from e
        with self._lock:
            self._records = records

    def get_audit_trail(self, limit: int = 100) -> list[dict[str, Any]]:
        return list(reversed(self.events[-limit:]))

    def _emit_event(self, event_type: str, data: dict[str, Any]) -> None:
        self.events.append({
            "event_type": event_type,
            "timestamp": datetime.now(UTC).isoformat(),
            "data": data,
        })
        if len(self.events) > self._max_events:
            del self.events[:-self._max_events]
