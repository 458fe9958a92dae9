"""
SealedGallery - Key Material

Identity secrets and the content keys derived from them.

An identity secret is a 256-bit scalar generated fresh for every listed item
(drawn from the secp256k1 scalar range, like a throwaway wallet private key).
Only the secret is sealed and distributed; the content key is re-derived from
it with a fixed one-way transform, so the derivation scheme can change without
re-sealing old secrets.
"""

import hashlib
import secrets

from errors import InvalidInputError

SECRET_SIZE = 32  # bytes
# secp256k1 group order; valid secrets lie in [1, n - 1]
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

KEY_DERIVATION_TAG = b"sealed-gallery/content-key/v1"


def _check_secret(secret: int) -> int:
    if isinstance(secret, bool) or not isinstance(secret, int):
        raise InvalidInputError("Identity secret must be an integer")
    if not 0 < secret < SECP256K1_ORDER:
        raise InvalidInputError("Identity secret out of range")
    return secret


def generate_identity_secret() -> int:
    """Draw a new uniformly random identity secret in [1, n - 1]."""
    return secrets.randbelow(SECP256K1_ORDER - 1) + 1


def encode_secret(secret: int) -> bytes:
    """Canonical 32-byte big-endian encoding of a secret."""
    return _check_secret(secret).to_bytes(SECRET_SIZE, "big")


def decode_secret(data: bytes) -> int:
    """
    Inverse of encode_secret.

    Raises:
        InvalidInputError: If the bytes are not a 32-byte in-range scalar
    """
    if not isinstance(data, (bytes, bytearray)) or len(data) != SECRET_SIZE:
        raise InvalidInputError(f"Encoded secret must be {SECRET_SIZE} bytes")
    return _check_secret(int.from_bytes(data, "big"))


def secret_to_hex(secret: int) -> str:
    """0x-prefixed, zero-padded 64-character hex form."""
    return "0x" + encode_secret(secret).hex()


def secret_from_hex(secret_hex: str) -> int:
    """Parse the output of secret_to_hex (prefix optional)."""
    if not isinstance(secret_hex, str):
        raise InvalidInputError("Secret hex must be a string")
    clean = secret_hex[2:] if secret_hex.startswith("0x") else secret_hex
    try:
        value = int(clean, 16)
    except ValueError as e:
        raise InvalidInputError("Invalid hex string") from e
    return _check_secret(value)


def derive_key(secret: int) -> bytes:
    """
    Derive the 256-bit content key for an identity secret.

    Pure and deterministic: the same secret always yields the same key.

    Args:
        secret: Identity secret

    Returns:
        32-byte content key
    """
    return hashlib.sha256(KEY_DERIVATION_TAG + encode_secret(secret)).digest()
