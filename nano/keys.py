"""Nano key derivation and address encoding.

Accounts are derived from a 32-byte seed as ``blake2b(seed || index)``; the
resulting private key is an ed25519 secret (blake2b variant) and the address
is the base32 encoding of the public key followed by a 5-byte checksum.
"""

import hashlib
import secrets
from dataclasses import dataclass

import ed25519_blake2b

from core.exceptions import InvalidInput

ALPHABET = "13456789abcdefghijkmnopqrstuwxyz"
PREFIXES = ("nano_", "xrb_")
SEED_BYTES = 32
_DECODE = {c: i for i, c in enumerate(ALPHABET)}


@dataclass(frozen=True)
class Account:
    """A derived ledger account.  Immutable once derived.

    Keys are stored as upper-case hex strings, the form the RPC expects.
    """

    index: int
    address: str
    public_key: str
    private_key: str

    def __repr__(self) -> str:
        # never leak key material into logs
        return f"Account(index={self.index}, address={self.address!r})"


def _b32encode(value: int, length: int) -> str:
    chars = []
    for _ in range(length):
        chars.append(ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def _b32decode(text: str) -> int:
    value = 0
    for char in text:
        value = (value << 5) | _DECODE[char]
    return value


def _checksum(public_key: bytes) -> bytes:
    return hashlib.blake2b(public_key, digest_size=5).digest()[::-1]


def encode_address(public_key: bytes, prefix: str = "nano_") -> str:
    if len(public_key) != 32:
        raise InvalidInput("Public key must be 32 bytes")
    body = _b32encode(int.from_bytes(public_key, "big"), 52)
    check = _b32encode(int.from_bytes(_checksum(public_key), "big"), 8)
    return prefix + body + check


def decode_address(address: str) -> bytes:
    """Return the public key encoded in *address*.

    Raises:
        InvalidInput: On a wrong prefix, length, character or checksum.
    """
    if not isinstance(address, str):
        raise InvalidInput("Address must be a string")
    for prefix in PREFIXES:
        if address.startswith(prefix):
            encoded = address[len(prefix):]
            break
    else:
        raise InvalidInput(f"Invalid Nano address prefix: {address[:10]}")

    if len(encoded) != 60 or any(c not in _DECODE for c in encoded) or encoded[0] not in "13":
        raise InvalidInput("Invalid Nano address")

    public_key = _b32decode(encoded[:52]).to_bytes(32, "big")
    if _b32decode(encoded[52:]).to_bytes(5, "big") != _checksum(public_key):
        raise InvalidInput("Invalid Nano address checksum")
    return public_key


def is_valid_address(address: str) -> bool:
    try:
        decode_address(address)
    except InvalidInput:
        return False
    return True


def generate_seed() -> bytes:
    return secrets.token_bytes(SEED_BYTES)


def parse_seed(seed_hex: str) -> bytes:
    try:
        seed = bytes.fromhex(seed_hex.strip())
    except (ValueError, AttributeError):
        raise InvalidInput("Seed must be 64 hex characters") from None
    if len(seed) != SEED_BYTES:
        raise InvalidInput("Seed must be 64 hex characters")
    return seed


def derive_private_key(seed: bytes, index: int) -> bytes:
    if len(seed) != SEED_BYTES:
        raise InvalidInput("Seed must be 32 bytes")
    if not 0 <= index <= 0xFFFFFFFF:
        raise InvalidInput(f"Account index out of range: {index}")
    return hashlib.blake2b(seed + index.to_bytes(4, "big"), digest_size=32).digest()


def public_key_from_private(private_key: bytes) -> bytes:
    return ed25519_blake2b.SigningKey(private_key).get_verifying_key().to_bytes()


def derive_account(seed: bytes, index: int = 0) -> Account:
    private_key = derive_private_key(seed, index)
    public_key = public_key_from_private(private_key)
    return Account(
        index=index,
        address=encode_address(public_key),
        public_key=public_key.hex().upper(),
        private_key=private_key.hex().upper(),
    )


def sign(private_key: bytes, message: bytes) -> bytes:
    return ed25519_blake2b.SigningKey(private_key).sign(message)


def verify(public_key: bytes, signature: bytes, message: bytes) -> bool:
    try:
        ed25519_blake2b.VerifyingKey(public_key).verify(signature, message)
    except ed25519_blake2b.BadSignatureError:
        return False
    return True
