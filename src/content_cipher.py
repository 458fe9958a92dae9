"""
SealedGallery - Content Cipher

Encrypts and decrypts content buffers under a per-item 256-bit key using
AES-256-GCM (authenticated encryption).

Package format:
    nonce (12 bytes) || ciphertext || tag (16 bytes)

Security Features:
- A fresh random 96-bit nonce for every encryption
- Authentication tag verified before any plaintext is returned
- Tampering, truncation or a wrong key surface as IntegrityError
"""

import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from errors import IntegrityError, InvalidInputError, MalformedInputError

# Constants
KEY_SIZE = 32  # 256 bits
NONCE_SIZE = 12  # 96 bits for GCM (recommended)
TAG_SIZE = 16  # 128-bit GCM tag
MIN_PACKAGE_SIZE = NONCE_SIZE + TAG_SIZE

# Magic numbers for the formats the gallery client previews
_MIME_SIGNATURES = (
    (b"\x89PNG", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF8", "image/gif"),
)
DEFAULT_MIME_TYPE = "application/octet-stream"


def _check_key(key: bytes) -> bytes:
    if not isinstance(key, (bytes, bytearray)):
        raise InvalidInputError("Content key must be bytes")
    if len(key) != KEY_SIZE:
        raise InvalidInputError(f"Content key must be {KEY_SIZE} bytes (256 bits), got {len(key)}")
    return bytes(key)


def generate_content_key() -> bytes:
    """
    Generate a random 256-bit content key.

    Most callers derive the key from an identity secret instead
    (see key_material.derive_key); this is for standalone use.
    """
    return secrets.token_bytes(KEY_SIZE)


def encrypt_content(plaintext: bytes, key: bytes, aad: bytes | None = None) -> bytes:
    """
    Encrypt a content buffer with AES-256-GCM.

    Args:
        plaintext: Content to encrypt (may be empty)
        key: 32-byte content key
        aad: Optional associated data bound to the package but not encrypted

    Returns:
        Package bytes: nonce || ciphertext || tag

    Raises:
        InvalidInputError: If the key or plaintext has the wrong type/size
    """
    key = _check_key(key)
    if not isinstance(plaintext, (bytes, bytearray)):
        raise InvalidInputError("Plaintext must be bytes")

    nonce = secrets.token_bytes(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, bytes(plaintext), aad)
    return nonce + sealed


def decrypt_content(package: bytes, key: bytes, aad: bytes | None = None) -> bytes:
    """
    Decrypt a package produced by encrypt_content.

    Args:
        package: nonce || ciphertext || tag
        key: 32-byte content key
        aad: Associated data used at encryption time

    Returns:
        The original plaintext

    Raises:
        MalformedInputError: If the package is too short to hold nonce and tag
        IntegrityError: If authentication fails (wrong key, corruption, tampering)
    """
    key = _check_key(key)
    if not isinstance(package, (bytes, bytearray)):
        raise MalformedInputError("Ciphertext package must be bytes")
    if len(package) < MIN_PACKAGE_SIZE:
        raise MalformedInputError(
            f"Ciphertext package too short: {len(package)} bytes, need at least {MIN_PACKAGE_SIZE}"
        )

    package = bytes(package)
    nonce, sealed = package[:NONCE_SIZE], package[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, sealed, aad)
    except InvalidTag as e:
        raise IntegrityError("Authentication tag did not verify") from e


def key_to_hex(key: bytes) -> str:
    """Render a content key as 0x-prefixed hex."""
    return "0x" + _check_key(key).hex()


def key_from_hex(key_hex: str) -> bytes:
    """
    Parse a 0x-prefixed (or bare) hex content key.

    Raises:
        InvalidInputError: If the string is not 64 hex characters
    """
    if not isinstance(key_hex, str):
        raise InvalidInputError("Key hex must be a string")
    clean = key_hex[2:] if key_hex.startswith("0x") else key_hex
    if len(clean) % 2 != 0:
        raise InvalidInputError("Invalid hex string")
    try:
        key = bytes.fromhex(clean)
    except ValueError as e:
        raise InvalidInputError("Invalid hex string") from e
    return _check_key(key)


def detect_mime_type(data: bytes) -> str:
    """
    Sniff the MIME type of decrypted content from its magic bytes.

    Recognises PNG, JPEG, GIF and WEBP; everything else is
    application/octet-stream.
    """
    for magic, mime in _MIME_SIGNATURES:
        if data.startswith(magic):
            return mime
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return DEFAULT_MIME_TYPE
