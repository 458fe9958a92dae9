"""
SealedGallery - Principal Identity

Ed25519 wallet identities for creators and buyers: keypair generation,
address derivation, typed-data signing and signer recovery.

A principal is identified by its address, derived from the public key:
    "0x" + hex(SHA-256(raw public key)[-20:])

Signer "recovery" checks the signature against the public key shipped with
it and returns the address derived from that key. The caller then compares
that address with the principal the message claims.

Usage:
    # Generate a new identity
    wallet = WalletIdentity.generate("alice")
    wallet.save("/path/to/keystore/alice.key", passphrase="secret")

    # Sign a typed message
    signature = wallet.sign_typed_data(typed_message)

    # Recover the signer
    address = recover_typed_data_signer(typed_message, signature, wallet.public_key_b64)
"""

import base64
import binascii
import hashlib
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)

from errors import InvalidInputError, SignatureInvalidError
from typed_data import TypedMessage, is_valid_address

logger = logging.getLogger(__name__)

PUBLIC_KEY_SIZE = 32
SIGNATURE_SIZE = 64


def address_from_public_key(public_key_bytes: bytes) -> str:
    """Derive the 0x address for a raw 32-byte Ed25519 public key."""
    if len(public_key_bytes) != PUBLIC_KEY_SIZE:
        raise InvalidInputError(f"Public key must be {PUBLIC_KEY_SIZE} bytes")
    return "0x" + hashlib.sha256(public_key_bytes).digest()[-20:].hex()


def normalize_address(address: str) -> str:
    """
    Lower-case and validate an address.

    Raises:
        InvalidInputError: If the address is malformed
    """
    if not isinstance(address, str):
        raise InvalidInputError("Address must be a string")
    candidate = address.strip().lower()
    if not is_valid_address(candidate):
        raise InvalidInputError(f"Malformed address: {address!r}")
    return candidate


class WalletIdentity:
    """
    A principal's signing identity.

    Holds an Ed25519 private key. The address and public key are public;
    the private key never leaves this object except via save().
    """

    def __init__(self, private_key: Ed25519PrivateKey, label: str = ""):
        self.label = label
        self._private_key = private_key
        self._public_key = private_key.public_key()

    @classmethod
    def generate(cls, label: str = "") -> "WalletIdentity":
        """Generate a fresh keypair."""
        identity = cls(Ed25519PrivateKey.generate(), label=label)
        logger.info("Generated new identity %s", identity.address)
        return identity

    @property
    def public_key_bytes(self) -> bytes:
        """Raw public key bytes (32 bytes)."""
        return self._public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)

    @property
    def public_key_b64(self) -> str:
        return base64.b64encode(self.public_key_bytes).decode("ascii")

    @property
    def address(self) -> str:
        return address_from_public_key(self.public_key_bytes)

    def sign_typed_data(self, typed: TypedMessage) -> str:
        """
        Sign a typed message.

        The message is validated against its declared types first, so a
        wallet never signs something it cannot display.

        Returns:
            Base64-encoded Ed25519 signature over the signing digest
        """
        typed.validate()
        signature = self._private_key.sign(typed.signing_digest())
        return base64.b64encode(signature).decode("ascii")

    def save(self, path: str, passphrase: str | None = None) -> None:
        """
        Save the keypair as PKCS8 PEM, encrypted when a passphrase is given.

        Args:
            path: File path for the keystore
            passphrase: Optional passphrase for encryption (recommended)
        """
        if passphrase:
            encryption = BestAvailableEncryption(passphrase.encode("utf-8"))
        else:
            encryption = NoEncryption()

        private_bytes = self._private_key.private_bytes(
            Encoding.PEM, PrivateFormat.PKCS8, encryption
        )

        # owner read/write only
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            os.write(fd, private_bytes)
        finally:
            os.close(fd)

        logger.info("Saved identity %s to %s", self.address, path)

    @classmethod
    def load(cls, path: str, passphrase: str | None = None) -> "WalletIdentity":
        """
        Load a keypair saved by save().

        Raises:
            InvalidInputError: If the file is not an Ed25519 key or the passphrase is wrong
        """
        with open(path, "rb") as f:
            private_bytes = f.read()

        pw = passphrase.encode("utf-8") if passphrase else None
        try:
            private_key = load_pem_private_key(private_bytes, password=pw)
        except (ValueError, TypeError) as e:
            raise InvalidInputError(f"Could not load keystore {path}: {e}") from e
        if not isinstance(private_key, Ed25519PrivateKey):
            raise InvalidInputError(f"Keystore {path} does not hold an Ed25519 key")

        label = os.path.splitext(os.path.basename(path))[0]
        identity = cls(private_key, label=label)
        logger.info("Loaded identity %s from %s", identity.address, path)
        return identity


def _b64decode(value: Any, what: str, size: int) -> bytes:
    if not isinstance(value, str):
        raise SignatureInvalidError(f"{what} must be base64 text")
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise SignatureInvalidError(f"{what} is not valid base64") from e
    if len(raw) != size:
        raise SignatureInvalidError(f"{what} must be {size} bytes")
    return raw


def recover_typed_data_signer(typed: TypedMessage, signature_b64: str, public_key_b64: str) -> str:
    """
    Verify a typed-data signature and return the signer's address.

    Args:
        typed: The message that was signed
        signature_b64: Base64 Ed25519 signature
        public_key_b64: Base64 raw public key of the claimed signer

    Returns:
        Address of the signer

    Raises:
        SignatureInvalidError: If the signature does not verify
    """
    signature = _b64decode(signature_b64, "Signature", SIGNATURE_SIZE)
    public_key_bytes = _b64decode(public_key_b64, "Public key", PUBLIC_KEY_SIZE)

    try:
        public_key = Ed25519PublicKey.from_public_bytes(public_key_bytes)
        public_key.verify(signature, typed.signing_digest())
    except (InvalidSignature, ValueError) as e:
        logger.warning("Typed-data signature verification failed")
        raise SignatureInvalidError("Signature does not verify") from e

    return address_from_public_key(public_key_bytes)
