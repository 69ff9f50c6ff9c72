"""Ed25519 public keys and keypairs in ledger address form."""
from __future__ import annotations

from dataclasses import dataclass

import base58
from nacl import bindings
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .exceptions import PayrailConfigurationError

PUBKEY_LENGTH = 32
SIGNATURE_LENGTH = 64


@dataclass(frozen=True, order=True)
class Pubkey:
    """A 32-byte ledger address."""

    raw: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.raw, (bytes, bytearray)) or len(self.raw) != PUBKEY_LENGTH:
            raise ValueError(f"Pubkey must be {PUBKEY_LENGTH} bytes")
        if isinstance(self.raw, bytearray):
            object.__setattr__(self, "raw", bytes(self.raw))

    @classmethod
    def from_string(cls, address: str) -> "Pubkey":
        """Parse a base58 address."""
        try:
            raw = base58.b58decode(address)
        except ValueError as e:
            raise ValueError(f"Invalid base58 address: {address!r}") from e
        return cls(raw)

    @classmethod
    def coerce(cls, value: "Pubkey | str | bytes") -> "Pubkey":
        if isinstance(value, Pubkey):
            return value
        if isinstance(value, str):
            return cls.from_string(value)
        return cls(bytes(value))

    def is_on_curve(self) -> bool:
        """Whether the bytes decode to a valid ed25519 point."""
        return bool(bindings.crypto_core_ed25519_is_valid_point(self.raw))

    def __bytes__(self) -> bytes:
        return self.raw

    def __str__(self) -> str:
        return base58.b58encode(self.raw).decode("ascii")

    def __repr__(self) -> str:
        return f"Pubkey({self})"


def is_valid_address(address: str) -> bool:
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False
    return True


def verify_signature(pubkey: Pubkey, message: bytes, signature: bytes) -> bool:
    """Check an ed25519 signature without raising."""
    if len(signature) != SIGNATURE_LENGTH:
        return False
    try:
        VerifyKey(pubkey.raw).verify(message, signature)
    except BadSignatureError:
        return False
    return True


class Keypair:
    """Ed25519 signing keypair.

    The secret never appears in repr or str output and no accessor returns
    it; holders can only sign with it.
    """

    __slots__ = ("_signing_key", "_pubkey")

    def __init__(self, signing_key: SigningKey) -> None:
        self._signing_key = signing_key
        self._pubkey = Pubkey(bytes(signing_key.verify_key))

    @classmethod
    def generate(cls) -> "Keypair":
        return cls(SigningKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "Keypair":
        if len(seed) != 32:
            raise ValueError("Seed must be 32 bytes")
        return cls(SigningKey(seed))

    @classmethod
    def from_base58(cls, secret: str) -> "Keypair":
        """Load a 64-byte base58 secret (seed followed by public key)."""
        try:
            raw = base58.b58decode(secret.strip())
        except ValueError as e:
            raise PayrailConfigurationError("Fee payer secret is not valid base58") from e
        if len(raw) == 32:
            return cls.from_seed(raw)
        if len(raw) != 64:
            raise PayrailConfigurationError(
                f"Fee payer secret must be 32 or 64 bytes, got {len(raw)}"
            )
        keypair = cls.from_seed(raw[:32])
        if keypair.pubkey.raw != raw[32:]:
            raise PayrailConfigurationError("Fee payer secret public half does not match seed")
        return keypair

    @property
    def pubkey(self) -> Pubkey:
        return self._pubkey

    def sign(self, message: bytes) -> bytes:
        return self._signing_key.sign(message).signature

    def __repr__(self) -> str:
        return f"Keypair(pubkey={self._pubkey})"

    __str__ = __repr__

    def __reduce__(self):
        raise TypeError("Keypair cannot be serialized")
