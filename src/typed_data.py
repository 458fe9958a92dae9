"""
SealedGallery - Typed Structured Data

A self-describing message format for signatures, modelled on EIP-712.

A typed message names its primary type, declares the ordered (name, type)
fields of that type, and carries a domain (application name, version, chain,
verifying contract). The signing digest commits to the domain, the full type
string and every field value, so a signature can never be replayed against a
message of a different shape or for a different deployment.

Supported field types: address, uint256, bytes32, bytes, string.
Binary values (bytes32, bytes) travel as 0x-prefixed hex strings.
"""

import hashlib
import re
from dataclasses import dataclass, field
from typing import Any

from errors import InvalidInputError

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-f]{40}$")
BYTES32_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
UINT256_MAX = 2**256 - 1

SUPPORTED_TYPES = ("address", "uint256", "bytes32", "bytes", "string")

DOMAIN_TYPE = "GalleryDomain"
DOMAIN_FIELDS = (
    ("name", "string"),
    ("version", "string"),
    ("chain_id", "uint256"),
    ("verifying_contract", "address"),
)


def is_valid_address(value: Any) -> bool:
    """True if value is a 0x-prefixed, 40-hex-character lower-case address."""
    return isinstance(value, str) and bool(ADDRESS_PATTERN.match(value))


def _hex_to_bytes(value: str, name: str) -> bytes:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise InvalidInputError(f"Field '{name}' must be a 0x-prefixed hex string")
    try:
        return bytes.fromhex(value[2:])
    except ValueError as e:
        raise InvalidInputError(f"Field '{name}' is not valid hex") from e


def encode_value(type_name: str, value: Any, name: str = "value") -> bytes:
    """
    Encode one field value to its 32-byte slot.

    Raises:
        InvalidInputError: If the value does not match the declared type
    """
    if type_name == "address":
        if not is_valid_address(value):
            raise InvalidInputError(f"Field '{name}' must be an address")
        return bytes(12) + bytes.fromhex(value[2:])

    if type_name == "uint256":
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= UINT256_MAX:
            raise InvalidInputError(f"Field '{name}' must be a uint256")
        return value.to_bytes(32, "big")

    if type_name == "bytes32":
        if not isinstance(value, str) or not BYTES32_PATTERN.match(value):
            raise InvalidInputError(f"Field '{name}' must be 32 bytes of 0x-hex")
        return bytes.fromhex(value[2:])

    if type_name == "bytes":
        return hashlib.sha256(_hex_to_bytes(value, name)).digest()

    if type_name == "string":
        if not isinstance(value, str):
            raise InvalidInputError(f"Field '{name}' must be a string")
        return hashlib.sha256(value.encode("utf-8")).digest()

    raise InvalidInputError(f"Unsupported field type: {type_name}")


def encode_type(primary_type: str, fields: list[tuple[str, str]]) -> str:
    """Type string, e.g. 'DecryptRequest(address principal,uint256 item_id)'."""
    return f"{primary_type}(" + ",".join(f"{t} {n}" for n, t in fields) + ")"


def hash_struct(primary_type: str, fields: list[tuple[str, str]], values: dict[str, Any]) -> bytes:
    """
    Hash a struct: SHA-256(SHA-256(type string) || encoded fields).

    The value dict must contain exactly the declared fields.
    """
    if not isinstance(values, dict):
        raise InvalidInputError(f"{primary_type} values must be an object")

    declared = [n for n, _ in fields]
    missing = [n for n in declared if n not in values]
    extra = sorted(set(values) - set(declared))
    if missing:
        raise InvalidInputError(f"{primary_type} missing fields: {', '.join(missing)}")
    if extra:
        raise InvalidInputError(f"{primary_type} has undeclared fields: {', '.join(extra)}")

    type_hash = hashlib.sha256(encode_type(primary_type, fields).encode("utf-8")).digest()
    encoded = b"".join(encode_value(t, values[n], n) for n, t in fields)
    return hashlib.sha256(type_hash + encoded).digest()


@dataclass(frozen=True)
class Domain:
    """Separates signatures of different applications and deployments."""

    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chain_id": self.chain_id,
            "verifying_contract": self.verifying_contract,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Domain":
        if not isinstance(data, dict):
            raise InvalidInputError("Domain must be an object")
        try:
            domain = cls(
                name=data["name"],
                version=data["version"],
                chain_id=data["chain_id"],
                verifying_contract=data["verifying_contract"],
            )
        except KeyError as e:
            raise InvalidInputError(f"Domain missing field: {e.args[0]}") from e
        if not isinstance(domain.name, str) or not isinstance(domain.version, str):
            raise InvalidInputError("Domain name and version must be strings")
        if isinstance(domain.chain_id, bool) or not isinstance(domain.chain_id, int):
            raise InvalidInputError("Domain chain_id must be an integer")
        if not is_valid_address(domain.verifying_contract):
            raise InvalidInputError("Domain verifying_contract must be an address")
        return domain

    def separator(self) -> bytes:
        return hash_struct(DOMAIN_TYPE, list(DOMAIN_FIELDS), self.to_dict())


@dataclass
class TypedMessage:
    """
    A structured message ready to be signed.

    Attributes:
        domain: Signing domain
        primary_type: Name of the message struct
        fields: Ordered (name, type) declarations for the struct
        message: Field values
    """

    domain: Domain
    primary_type: str
    fields: list[tuple[str, str]]
    message: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        """Raise InvalidInputError unless every value matches its declared type."""
        for _, type_name in self.fields:
            if type_name not in SUPPORTED_TYPES:
                raise InvalidInputError(f"Unsupported field type: {type_name}")
        hash_struct(self.primary_type, self.fields, self.message)

    def signing_digest(self) -> bytes:
        """SHA-256(0x1901 || domain separator || struct hash)."""
        return hashlib.sha256(
            b"\x19\x01"
            + self.domain.separator()
            + hash_struct(self.primary_type, self.fields, self.message)
        ).digest()

    def describe(self) -> str:
        """Human-readable rendering so a signer can see what is authorized."""
        lines = [f"{self.domain.name} v{self.domain.version} (chain {self.domain.chain_id})"]
        lines.append(self.primary_type)
        for name, type_name in self.fields:
            lines.append(f"  {name} ({type_name}): {self.message.get(name)}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain.to_dict(),
            "primary_type": self.primary_type,
            "types": {self.primary_type: [{"name": n, "type": t} for n, t in self.fields]},
            "message": dict(self.message),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TypedMessage":
        """
        Parse a typed message from its wire form.

        Raises:
            InvalidInputError: If the structure is malformed
        """
        if not isinstance(data, dict):
            raise InvalidInputError("Typed message must be an object")
        primary_type = data.get("primary_type")
        types = data.get("types")
        if not isinstance(primary_type, str) or not isinstance(types, dict):
            raise InvalidInputError("Typed message requires primary_type and types")
        declarations = types.get(primary_type)
        if not isinstance(declarations, list):
            raise InvalidInputError(f"No type declaration for {primary_type}")
        fields = []
        for declaration in declarations:
            if not isinstance(declaration, dict):
                raise InvalidInputError("Malformed type declaration")
            name, type_name = declaration.get("name"), declaration.get("type")
            if not isinstance(name, str) or not isinstance(type_name, str):
                raise InvalidInputError("Field declarations need string name and type")
            fields.append((name, type_name))
        names = [name for name, _ in fields]
        if len(set(names)) != len(names):
            raise InvalidInputError(f"Duplicate field names in {primary_type}")

        message = cls(
            domain=Domain.from_dict(data.get("domain")),
            primary_type=primary_type,
            fields=fields,
            message=data.get("message") or {},
        )
        message.validate()
        return message
