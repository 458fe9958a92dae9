"""
SealedGallery - Key Release Protocol

The exchange by which a principal proves who they are and obtains the raw
identity secret of an item they are authorized for.

Flow:
    1. Requester generates a SessionKeypair (X25519)
    2. build_request() produces a DecryptRequest typed message binding the
       principal, item, sealed handle, session public key and validity window
    3. The requester signs it with their wallet (sign_request)
    4. The authority verifies domain, signature, window and permission, then
       unseals the secret and encrypts it to the session key
    5. open_response() recovers the secret on the requester side

The authority keeps no per-request state. A captured request is only useful
inside its window and only for a principal who is already authorized.
"""

import base64
import binascii
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

import requests
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from content_cipher import KEY_SIZE, decrypt_content, encrypt_content
from errors import (
    AuthorityUnavailableError,
    ExpiredRequestError,
    GalleryError,
    InvalidInputError,
    MalformedInputError,
    NotAuthorizedError,
    SignatureInvalidError,
    error_from_dict,
)
from identity import WalletIdentity, normalize_address, recover_typed_data_signer
from key_material import decode_secret, encode_secret
from monitoring import metrics
from retry import RetryConfig, retry_call
from sealed_key_store import SealedKeyStore
from sealing import SealingBackend
from typed_data import Domain, TypedMessage

logger = logging.getLogger(__name__)

# Original client: ACCESS_DURATION_DAYS = 10
DEFAULT_VALIDITY_SECONDS = 10 * 24 * 60 * 60
DEFAULT_MAX_VALIDITY_SECONDS = 365 * 24 * 60 * 60

DEFAULT_CHAIN_ID = 31337
DEFAULT_VERIFYING_CONTRACT = "0x" + "00" * 20

REQUEST_TYPE = "DecryptRequest"
REQUEST_FIELDS = [
    ("principal", "address"),
    ("item_id", "uint256"),
    ("sealed_handle", "bytes32"),
    ("session_public_key", "bytes"),
    ("start_timestamp", "uint256"),
    ("duration_seconds", "uint256"),
]

PURCHASE_TYPE = "Purchase"
PURCHASE_FIELDS = [
    ("buyer", "address"),
    ("item_id", "uint256"),
    ("payment", "uint256"),
    ("start_timestamp", "uint256"),
    ("duration_seconds", "uint256"),
]

GRANT_TYPE = "GrantAccess"
GRANT_FIELDS = [
    ("requester", "address"),
    ("item_id", "uint256"),
    ("principal", "address"),
    ("start_timestamp", "uint256"),
    ("duration_seconds", "uint256"),
]

LIST_TYPE = "ListItem"
LIST_FIELDS = [
    ("creator", "address"),
    ("ciphertext_handle", "string"),
    ("sealed_secret", "bytes32"),
    ("start_timestamp", "uint256"),
    ("duration_seconds", "uint256"),
]

CHANNEL_INFO = b"sealed-gallery/reencrypt/v1"
SESSION_KEY_SIZE = 32


def default_domain(
    chain_id: int = DEFAULT_CHAIN_ID,
    verifying_contract: str = DEFAULT_VERIFYING_CONTRACT,
) -> Domain:
    return Domain(
        name="SealedGallery",
        version="1",
        chain_id=chain_id,
        verifying_contract=normalize_address(verifying_contract),
    )


# =============================================================================
# Session channel
# =============================================================================

def _raw_public(public_key: X25519PublicKey) -> bytes:
    return public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)


def _channel_key(shared_secret: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=CHANNEL_INFO,
    ).derive(shared_secret)


class SessionKeypair:
    """Ephemeral X25519 keypair binding a key-release response to one requester."""

    def __init__(self, private_key: X25519PrivateKey | None = None):
        self._private_key = private_key or X25519PrivateKey.generate()

    @property
    def public_key_bytes(self) -> bytes:
        return _raw_public(self._private_key.public_key())

    def shared_key(self, peer_public_bytes: bytes) -> bytes:
        try:
            peer = X25519PublicKey.from_public_bytes(peer_public_bytes)
        except ValueError as e:
            raise MalformedInputError("Invalid ephemeral public key") from e
        return _channel_key(self._private_key.exchange(peer))


def seal_for_session(raw_secret: int, session_public_bytes: bytes) -> dict[str, str]:
    """
    Encrypt a secret so only the holder of the session private key can read it.

    Returns:
        Dict with base64 ephemeral_public_key and ciphertext
    """
    try:
        session_public = X25519PublicKey.from_public_bytes(session_public_bytes)
    except ValueError as e:
        raise InvalidInputError("Invalid session public key") from e

    ephemeral = X25519PrivateKey.generate()
    ephemeral_public = _raw_public(ephemeral.public_key())
    key = _channel_key(ephemeral.exchange(session_public))
    package = encrypt_content(
        encode_secret(raw_secret), key, aad=ephemeral_public + session_public_bytes
    )
    return {
        "ephemeral_public_key": base64.b64encode(ephemeral_public).decode("ascii"),
        "ciphertext": base64.b64encode(package).decode("ascii"),
    }


def open_response(response: dict[str, Any], session: SessionKeypair) -> int:
    """
    Recover the raw secret from an authority response.

    Raises:
        MalformedInputError: If the response is not a channel payload
        IntegrityError: If it was not encrypted to this session
    """
    try:
        ephemeral_public = base64.b64decode(response["ephemeral_public_key"], validate=True)
        package = base64.b64decode(response["ciphertext"], validate=True)
    except (KeyError, TypeError, binascii.Error) as e:
        raise MalformedInputError("Authority response is malformed") from e

    key = session.shared_key(ephemeral_public)
    plaintext = decrypt_content(package, key, aad=ephemeral_public + session.public_key_bytes)
    return decode_secret(plaintext)


# =============================================================================
# Requests
# =============================================================================

def _check_duration(duration_seconds: int, max_duration_seconds: int) -> None:
    if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, int):
        raise InvalidInputError("Duration must be an integer number of seconds")
    if duration_seconds <= 0:
        raise InvalidInputError("Validity window must be longer than zero seconds")
    if duration_seconds > max_duration_seconds:
        raise InvalidInputError(
            "Validity window exceeds the maximum",
            {"max_duration_seconds": max_duration_seconds},
        )


def _windowed_message(
    primary_type: str,
    fields: list[tuple[str, str]],
    values: dict[str, Any],
    issued_at: int | None,
    duration_seconds: int,
    domain: Domain | None,
    max_duration_seconds: int,
) -> TypedMessage:
    _check_duration(duration_seconds, max_duration_seconds)
    typed = TypedMessage(
        domain=domain or default_domain(),
        primary_type=primary_type,
        fields=list(fields),
        message={
            **values,
            "start_timestamp": int(time.time()) if issued_at is None else issued_at,
            "duration_seconds": duration_seconds,
        },
    )
    typed.validate()
    return typed


def build_request(
    principal: str,
    item_id: int,
    sealed_handle: str,
    session_public_key: bytes,
    *,
    issued_at: int | None = None,
    duration_seconds: int = DEFAULT_VALIDITY_SECONDS,
    domain: Domain | None = None,
    max_duration_seconds: int = DEFAULT_MAX_VALIDITY_SECONDS,
) -> TypedMessage:
    """
    Build the typed DecryptRequest a principal signs to obtain a secret.

    Args:
        principal: Requester's address
        item_id: Item whose secret is requested
        sealed_handle: The item's sealed secret handle
        session_public_key: Raw X25519 public key the response is encrypted to
        issued_at: Window start (unix seconds); defaults to now
        duration_seconds: Window length
        domain: Signing domain; defaults to default_domain()
        max_duration_seconds: Longest window accepted

    Raises:
        InvalidInputError: On a malformed argument or an out-of-bounds window
    """
    if len(session_public_key) != SESSION_KEY_SIZE:
        raise InvalidInputError(f"Session public key must be {SESSION_KEY_SIZE} bytes")
    values = {
        "principal": normalize_address(principal),
        "item_id": item_id,
        "sealed_handle": sealed_handle.lower() if isinstance(sealed_handle, str) else sealed_handle,
        "session_public_key": "0x" + bytes(session_public_key).hex(),
    }
    return _windowed_message(
        REQUEST_TYPE, REQUEST_FIELDS, values,
        issued_at, duration_seconds, domain, max_duration_seconds,
    )


def build_purchase(
    buyer: str,
    item_id: int,
    payment: int,
    *,
    issued_at: int | None = None,
    duration_seconds: int = DEFAULT_VALIDITY_SECONDS,
    domain: Domain | None = None,
    max_duration_seconds: int = DEFAULT_MAX_VALIDITY_SECONDS,
) -> TypedMessage:
    """Typed Purchase message a buyer signs to pay for an item."""
    values = {"buyer": normalize_address(buyer), "item_id": item_id, "payment": payment}
    return _windowed_message(
        PURCHASE_TYPE, PURCHASE_FIELDS, values,
        issued_at, duration_seconds, domain, max_duration_seconds,
    )


def build_grant(
    requester: str,
    item_id: int,
    principal: str,
    *,
    issued_at: int | None = None,
    duration_seconds: int = DEFAULT_VALIDITY_SECONDS,
    domain: Domain | None = None,
    max_duration_seconds: int = DEFAULT_MAX_VALIDITY_SECONDS,
) -> TypedMessage:
    """Typed GrantAccess message a creator signs to authorize a principal."""
    values = {
        "requester": normalize_address(requester),
        "item_id": item_id,
        "principal": normalize_address(principal),
    }
    return _windowed_message(
        GRANT_TYPE, GRANT_FIELDS, values,
        issued_at, duration_seconds, domain, max_duration_seconds,
    )


def build_listing(
    creator: str,
    ciphertext_handle: str,
    sealed_secret: str,
    *,
    issued_at: int | None = None,
    duration_seconds: int = DEFAULT_VALIDITY_SECONDS,
    domain: Domain | None = None,
    max_duration_seconds: int = DEFAULT_MAX_VALIDITY_SECONDS,
) -> TypedMessage:
    """Typed ListItem message a creator signs to list their sealed secret."""
    values = {
        "creator": normalize_address(creator),
        "ciphertext_handle": ciphertext_handle,
        "sealed_secret": sealed_secret.lower() if isinstance(sealed_secret, str) else sealed_secret,
    }
    return _windowed_message(
        LIST_TYPE, LIST_FIELDS, values,
        issued_at, duration_seconds, domain, max_duration_seconds,
    )


@dataclass
class SignedRequest:
    """A typed request with its signature and the signer's public key."""

    typed: TypedMessage
    signature: str
    public_key: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "typed_data": self.typed.to_dict(),
            "signature": self.signature,
            "public_key": self.public_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SignedRequest":
        if not isinstance(data, dict):
            raise InvalidInputError("Signed request must be an object")
        signature = data.get("signature")
        public_key = data.get("public_key")
        if not isinstance(signature, str) or not isinstance(public_key, str):
            raise InvalidInputError("Signed request requires signature and public_key")
        return cls(
            typed=TypedMessage.from_dict(data.get("typed_data")),
            signature=signature,
            public_key=public_key,
        )


def sign_request(wallet: WalletIdentity, typed: TypedMessage) -> SignedRequest:
    return SignedRequest(
        typed=typed,
        signature=wallet.sign_typed_data(typed),
        public_key=wallet.public_key_b64,
    )


# =============================================================================
# Authority
# =============================================================================

class AuthorityService:
    """
    Verifies signed requests and releases secrets to authorized principals.

    Args:
        store: Permission state machine consulted on every request
        sealing: Backend holding the sealed secrets
        domain: Signing domain requests must be bound to
        clock: Returns the current unix time (injectable for tests)
        max_validity_seconds: Longest validity window accepted
    """

    def __init__(
        self,
        store: SealedKeyStore,
        sealing: SealingBackend,
        domain: Domain | None = None,
        clock: Callable[[], float] = time.time,
        max_validity_seconds: int = DEFAULT_MAX_VALIDITY_SECONDS,
    ):
        self.store = store
        self.sealing = sealing
        self.domain = domain or default_domain()
        self._clock = clock
        self.max_validity_seconds = max_validity_seconds

    def submit(self, signed: SignedRequest) -> dict[str, str]:
        """
        Check a signed request and answer with the secret sealed to the session key.

        Raises:
            SignatureInvalidError: Wrong domain, bad signature, or signer is not the principal
            ExpiredRequestError: Current time outside the validity window
            InvalidInputError: Malformed request or a handle that is not the item's
            NotFoundError: Unknown item
            NotAuthorizedError: Signer holds no permission for the item
        """
        try:
            with metrics.timer("authority_submit_ms"):
                response = self._submit(signed)
        except GalleryError as e:
            metrics.increment("authority_decisions_total", labels={"outcome": e.code})
            raise
        metrics.increment("authority_decisions_total", labels={"outcome": "released"})
        return response

    def verify(
        self,
        signed: SignedRequest,
        primary_type: str,
        fields: list[tuple[str, str]],
        signer_field: str,
    ) -> dict[str, Any]:
        """
        Check shape, domain, signer and window of a signed typed message.

        Args:
            signed: The signed message
            primary_type: Expected struct name
            fields: Expected field declarations
            signer_field: Address field the signature must come from

        Returns:
            The verified message values

        Raises:
            InvalidInputError: Wrong message shape or an out-of-bounds window
            SignatureInvalidError: Wrong domain, bad signature, or signer mismatch
            ExpiredRequestError: Current time outside the validity window
        """
        typed = signed.typed
        if typed.primary_type != primary_type or list(typed.fields) != list(fields):
            raise InvalidInputError(f"Expected a {primary_type} message")
        typed.validate()

        if typed.domain != self.domain:
            logger.warning("Rejected %s bound to foreign domain %s", primary_type, typed.domain)
            raise SignatureInvalidError("Request is bound to a different signing domain")

        message = typed.message
        signer = recover_typed_data_signer(typed, signed.signature, signed.public_key)
        if signer != message[signer_field]:
            logger.warning("Rejected %s: signer %s claims %s", primary_type, signer, message[signer_field])
            raise SignatureInvalidError(f"Signer does not match the {signer_field}")

        start = message["start_timestamp"]
        duration = message["duration_seconds"]
        if duration == 0 or duration > self.max_validity_seconds:
            raise InvalidInputError("Validity window is out of bounds")
        now = self._clock()
        if not start <= now < start + duration:
            logger.warning("Rejected expired %s from %s", primary_type, signer)
            raise ExpiredRequestError(
                "Request is outside its validity window",
                {"start_timestamp": start, "duration_seconds": duration},
            )
        return message

    def _submit(self, signed: SignedRequest) -> dict[str, str]:
        message = self.verify(signed, REQUEST_TYPE, REQUEST_FIELDS, "principal")
        signer = message["principal"]

        item = self.store.get_item(message["item_id"])
        handle = message["sealed_handle"].lower()
        if handle != item.sealed_secret:
            raise InvalidInputError("Sealed handle does not belong to this item")

        if not self.store.is_authorized(item.item_id, signer):
            logger.warning("Denied key release for item %d to %s", item.item_id, signer)
            raise NotAuthorizedError("Principal is not authorized for this item")

        raw_secret = self.sealing.sealed_unseal(handle, signer, signed)
        session_public = bytes.fromhex(message["session_public_key"][2:])
        response = seal_for_session(raw_secret, session_public)
        logger.info("Released key for item %d to %s", item.item_id, signer)
        return response


# =============================================================================
# Clients
# =============================================================================

class AuthorityClient(ABC):
    """Transport to an authority."""

    @abstractmethod
    def submit(self, signed: SignedRequest) -> dict[str, str]:
        pass


class LocalAuthorityClient(AuthorityClient):
    """Calls an in-process AuthorityService."""

    def __init__(self, service: AuthorityService):
        self.service = service

    def submit(self, signed: SignedRequest) -> dict[str, str]:
        return self.service.submit(signed)


class HTTPAuthorityClient(AuthorityClient):
    """
    Talks to a remote authority's POST /authority/decrypt endpoint.

    Connection failures, timeouts and 5xx gateway errors are retried with
    backoff. Typed error payloads are raised as the matching GalleryError.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        retry_config: RetryConfig | None = None,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()
        self._session = session or requests.Session()

    def submit(self, signed: SignedRequest) -> dict[str, str]:
        try:
            return retry_call(
                self._post,
                args=(signed.to_dict(),),
                config=self.retry_config,
                circuit_breaker_name="authority",
            )
        except ConnectionError as e:
            raise AuthorityUnavailableError(str(e)) from e

    def _post(self, payload: dict[str, Any]) -> dict[str, str]:
        url = f"{self.base_url}/authority/decrypt"
        try:
            response = self._session.post(url, json=payload, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise AuthorityUnavailableError(f"Authority unreachable at {url}: {e}") from e

        if response.status_code in (502, 503, 504):
            raise AuthorityUnavailableError(f"Authority returned {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedInputError(
                f"Authority returned a non-JSON response ({response.status_code})"
            ) from e

        if not response.ok:
            raise error_from_dict(body if isinstance(body, dict) else {}, response.status_code)
        return body
