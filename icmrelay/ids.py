"""Identifiers used across chains: blockchain IDs, node IDs, addresses and hashes."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

from Crypto.Hash import keccak

ID_LENGTH = 32
NODE_ID_LENGTH = 20
ADDRESS_LENGTH = 20
HASH_LENGTH = 32
NODE_ID_PREFIX = "NodeID-"

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {char: index for index, char in enumerate(_B58_ALPHABET)}
_CHECKSUM_LENGTH = 4
_HEX_DIGITS = re.compile(r"[0-9a-fA-F]*")


def _b58encode(data: bytes) -> str:
    number = int.from_bytes(data, "big")
    digits = []
    while number:
        number, remainder = divmod(number, 58)
        digits.append(_B58_ALPHABET[remainder])
    leading_zeros = len(data) - len(data.lstrip(b"\0"))
    return "1" * leading_zeros + "".join(reversed(digits))


def _b58decode(text: str) -> bytes:
    number = 0
    for char in text:
        try:
            number = number * 58 + _B58_INDEX[char]
        except KeyError:
            raise ValueError(f"invalid base58 character {char!r}") from None
    leading_ones = len(text) - len(text.lstrip("1"))
    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    return b"\0" * leading_ones + body


def _checksum(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()[-_CHECKSUM_LENGTH:]


def _cb58_encode(data: bytes) -> str:
    return _b58encode(data + _checksum(data))


def _cb58_decode(text: str) -> bytes:
    raw = _b58decode(text)
    if len(raw) < _CHECKSUM_LENGTH:
        raise ValueError("input string is smaller than the checksum size")
    payload, checksum = raw[:-_CHECKSUM_LENGTH], raw[-_CHECKSUM_LENGTH:]
    if _checksum(payload) != checksum:
        raise ValueError("invalid input checksum")
    return payload


def _has_hex_prefix(value: str) -> bool:
    return len(value) >= 2 and value[0] == "0" and value[1] in "xX"


def _hex_to_fixed_bytes(value: str, size: int) -> bytes:
    text = value[2:] if _has_hex_prefix(value) else value
    if not _HEX_DIGITS.fullmatch(text):
        raise ValueError(f"invalid hex string: {value!r}")
    if len(text) % 2:
        text = "0" + text
    data = bytes.fromhex(text)[-size:]
    return data.rjust(size, b"\0")


def _require_length(raw: bytes, size: int, kind: str) -> bytes:
    raw = bytes(raw)
    if len(raw) != size:
        raise ValueError(f"{kind} must be {size} bytes, got {len(raw)}")
    return raw


def keccak256_hash(data: bytes) -> Hash:
    """Return the Keccak-256 digest of ``data`` as a Hash."""
    return Hash(keccak.new(digest_bits=256, data=bytes(data)).digest())


def is_hex_address(value: str) -> bool:
    """Report whether ``value`` is 40 hex digits, optionally prefixed by 0x."""
    text = value[2:] if _has_hex_prefix(value) else value
    return len(text) == 2 * ADDRESS_LENGTH and bool(_HEX_DIGITS.fullmatch(text))


@dataclass(frozen=True)
class ID:
    """A 32-byte identifier, written in CB58."""

    raw: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "raw", _require_length(self.raw, ID_LENGTH, "ID"))

    @classmethod
    def from_string(cls, value: str) -> ID:
        return cls(_cb58_decode(value))

    def __str__(self) -> str:
        return _cb58_encode(self.raw)

    def __repr__(self) -> str:
        return f"ID({str(self)!r})"


@dataclass(frozen=True)
class NodeID:
    """A 20-byte node identifier, written as ``NodeID-`` followed by CB58."""

    raw: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "raw", _require_length(self.raw, NODE_ID_LENGTH, "NodeID"))

    @classmethod
    def from_string(cls, value: str) -> NodeID:
        if not value.startswith(NODE_ID_PREFIX):
            raise ValueError(f"NodeID must start with {NODE_ID_PREFIX!r}: {value!r}")
        return cls(_cb58_decode(value[len(NODE_ID_PREFIX):]))

    def __str__(self) -> str:
        return NODE_ID_PREFIX + _cb58_encode(self.raw)

    def __repr__(self) -> str:
        return f"NodeID({str(self)!r})"


@dataclass(frozen=True)
class Address:
    """A 20-byte account address, written with a mixed-case checksum."""

    raw: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "raw", _require_length(self.raw, ADDRESS_LENGTH, "Address"))

    @classmethod
    def from_hex(cls, value: str) -> Address:
        """Parse hex text; longer input keeps its last 20 bytes, shorter is left-padded."""
        return cls(_hex_to_fixed_bytes(value, ADDRESS_LENGTH))

    def hex(self) -> str:
        lower = self.raw.hex()
        digest = keccak.new(digest_bits=256, data=lower.encode("ascii")).hexdigest()
        return "0x" + "".join(
            char.upper() if char.isalpha() and int(nibble, 16) >= 8 else char
            for char, nibble in zip(lower, digest)
        )

    def __str__(self) -> str:
        return self.hex()

    def __repr__(self) -> str:
        return f"Address({self.hex()!r})"


@dataclass(frozen=True)
class Hash:
    """A 32-byte hash, written as lower-case hex."""

    raw: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "raw", _require_length(self.raw, HASH_LENGTH, "Hash"))

    @classmethod
    def from_hex(cls, value: str) -> Hash:
        """Parse hex text; longer input keeps its last 32 bytes, shorter is left-padded."""
        return cls(_hex_to_fixed_bytes(value, HASH_LENGTH))

    def hex(self) -> str:
        return "0x" + self.raw.hex()

    def __str__(self) -> str:
        return self.hex()

    def __repr__(self) -> str:
        return f"Hash({self.hex()!r})"


EMPTY_ID = ID(bytes(ID_LENGTH))
ZERO_ADDRESS = Address(bytes(ADDRESS_LENGTH))