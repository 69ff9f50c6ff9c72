"""
Legacy ledger transaction wire format.

Implements message compilation, serialization and signing for the legacy
(unversioned) transaction layout:

    signatures:   compact-u16 count, then 64-byte signatures
    message:
      header:     num_required_signatures, num_readonly_signed,
                  num_readonly_unsigned (one byte each)
      keys:       compact-u16 count, then 32-byte account keys
      blockhash:  32 bytes
      program ix: compact-u16 count, then per instruction
                  program index (u8), compact-u16 account indices,
                  compact-u16 data length + data

The fee payer is always account key 0 and the first signer.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import struct
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

import base58

from .constants import (
    Programs,
    SYSTEM_IX_TRANSFER,
    SYSTEM_IX_TRANSFER_WITH_SEED,
    TOKEN_IX_TRANSFER,
    TOKEN_IX_TRANSFER_CHECKED,
)
from .exceptions import TransactionDecodeError
from .keys import PUBKEY_LENGTH, SIGNATURE_LENGTH, Keypair, Pubkey, verify_signature

EMPTY_SIGNATURE = bytes(SIGNATURE_LENGTH)

SYSTEM_PROGRAM_ID = Pubkey.from_string(Programs.SYSTEM)
TOKEN_PROGRAM_ID = Pubkey.from_string(Programs.TOKEN)
MEMO_PROGRAM_ID = Pubkey.from_string(Programs.MEMO)


# =============================================================================
# Compact encodings
# =============================================================================

def encode_length(value: int) -> bytes:
    """Encode a compact-u16 length prefix."""
    if value < 0 or value > 0xFFFF:
        raise ValueError(f"Length {value} out of compact-u16 range")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


class ByteReader:
    """Bounds-checked cursor over serialized bytes."""

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self.data = data
        self.offset = offset

    def take(self, size: int) -> bytes:
        end = self.offset + size
        if size < 0 or end > len(self.data):
            raise TransactionDecodeError(
                f"Unexpected end of data at offset {self.offset} (need {size} bytes)"
            )
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return struct.unpack("<H", self.take(2))[0]

    def u32(self) -> int:
        return struct.unpack("<I", self.take(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self.take(8))[0]

    def compact_length(self) -> int:
        value = 0
        for position in range(3):
            byte = self.u8()
            value |= (byte & 0x7F) << (7 * position)
            if not byte & 0x80:
                return value
        raise TransactionDecodeError("compact-u16 length overflows three bytes")

    def pubkey(self) -> Pubkey:
        return Pubkey(self.take(PUBKEY_LENGTH))

    @property
    def remaining(self) -> int:
        return len(self.data) - self.offset


# =============================================================================
# Instructions
# =============================================================================

@dataclass(frozen=True)
class AccountMeta:
    pubkey: Pubkey
    is_signer: bool
    is_writable: bool


@dataclass(frozen=True)
class Instruction:
    program_id: Pubkey
    accounts: tuple[AccountMeta, ...]
    data: bytes

    def __init__(
        self,
        program_id: Pubkey,
        accounts: Iterable[AccountMeta] = (),
        data: bytes = b"",
    ) -> None:
        object.__setattr__(self, "program_id", program_id)
        object.__setattr__(self, "accounts", tuple(accounts))
        object.__setattr__(self, "data", bytes(data))


@dataclass(frozen=True)
class CompiledInstruction:
    program_id_index: int
    account_indices: tuple[int, ...]
    data: bytes


def token_transfer(
    source: Pubkey,
    destination: Pubkey,
    authority: Pubkey,
    amount: int,
) -> Instruction:
    """SPL token Transfer: tag 3 followed by the u64 amount."""
    return Instruction(
        TOKEN_PROGRAM_ID,
        [
            AccountMeta(source, False, True),
            AccountMeta(destination, False, True),
            AccountMeta(authority, True, False),
        ],
        bytes([TOKEN_IX_TRANSFER]) + struct.pack("<Q", amount),
    )


def system_transfer(source: Pubkey, destination: Pubkey, lamports: int) -> Instruction:
    return Instruction(
        SYSTEM_PROGRAM_ID,
        [AccountMeta(source, True, True), AccountMeta(destination, False, True)],
        struct.pack("<IQ", SYSTEM_IX_TRANSFER, lamports),
    )


def memo_instruction(text: str, signers: Sequence[Pubkey] = ()) -> Instruction:
    return Instruction(
        MEMO_PROGRAM_ID,
        [AccountMeta(signer, True, False) for signer in signers],
        text.encode("utf-8"),
    )


@dataclass(frozen=True)
class FundsMovement:
    """A transfer instruction reduced to the accounts that authorize it."""

    kind: str
    source: Pubkey
    authority: Pubkey
    destination: Pubkey
    amount: int


def describe_transfer(instruction: Instruction) -> Optional[FundsMovement]:
    """Recognise token and native transfer instructions.

    Returns None for instructions that do not move funds.
    """
    data = instruction.data
    accounts = instruction.accounts
    if instruction.program_id == TOKEN_PROGRAM_ID and data:
        tag = data[0]
        if tag == TOKEN_IX_TRANSFER and len(accounts) >= 3 and len(data) >= 9:
            return FundsMovement(
                "token_transfer",
                accounts[0].pubkey,
                accounts[2].pubkey,
                accounts[1].pubkey,
                struct.unpack_from("<Q", data, 1)[0],
            )
        if tag == TOKEN_IX_TRANSFER_CHECKED and len(accounts) >= 4 and len(data) >= 9:
            return FundsMovement(
                "token_transfer_checked",
                accounts[0].pubkey,
                accounts[3].pubkey,
                accounts[2].pubkey,
                struct.unpack_from("<Q", data, 1)[0],
            )
    if instruction.program_id == SYSTEM_PROGRAM_ID and len(data) >= 12:
        tag = struct.unpack_from("<I", data, 0)[0]
        if tag == SYSTEM_IX_TRANSFER and len(accounts) >= 2:
            return FundsMovement(
                "system_transfer",
                accounts[0].pubkey,
                accounts[0].pubkey,
                accounts[1].pubkey,
                struct.unpack_from("<Q", data, 4)[0],
            )
        if tag == SYSTEM_IX_TRANSFER_WITH_SEED and len(accounts) >= 3:
            return FundsMovement(
                "system_transfer_with_seed",
                accounts[0].pubkey,
                accounts[1].pubkey,
                accounts[2].pubkey,
                struct.unpack_from("<Q", data, 4)[0],
            )
    return None


# =============================================================================
# Account ordering
# =============================================================================

@dataclass(frozen=True)
class AccountLayout:
    """Ordered keys grouped as writable signers, readonly signers,
    writable non-signers, readonly non-signers."""

    keys: tuple[Pubkey, ...]
    num_signers: int
    num_writable_signers: int
    num_writable_non_signers: int

    @property
    def num_readonly_signed(self) -> int:
        return self.num_signers - self.num_writable_signers

    @property
    def num_readonly_unsigned(self) -> int:
        return len(self.keys) - self.num_signers - self.num_writable_non_signers


def order_accounts(payer: Pubkey, instructions: Sequence[Instruction]) -> AccountLayout:
    """Collect every account referenced by the instructions, payer first."""
    flags: dict[Pubkey, list[bool]] = {payer: [True, True]}
    for ix in instructions:
        for meta in ix.accounts:
            entry = flags.setdefault(meta.pubkey, [False, False])
            entry[0] = entry[0] or meta.is_signer
            entry[1] = entry[1] or meta.is_writable
        flags.setdefault(ix.program_id, [False, False])

    writable_signers = [k for k, (s, w) in flags.items() if s and w]
    readonly_signers = [k for k, (s, w) in flags.items() if s and not w]
    writable_others = [k for k, (s, w) in flags.items() if not s and w]
    readonly_others = [k for k, (s, w) in flags.items() if not s and not w]

    return AccountLayout(
        keys=tuple(writable_signers + readonly_signers + writable_others + readonly_others),
        num_signers=len(writable_signers) + len(readonly_signers),
        num_writable_signers=len(writable_signers),
        num_writable_non_signers=len(writable_others),
    )


def compile_instructions(
    keys: Sequence[Pubkey],
    instructions: Sequence[Instruction],
) -> tuple[CompiledInstruction, ...]:
    index = {key: position for position, key in enumerate(keys)}
    return tuple(
        CompiledInstruction(
            program_id_index=index[ix.program_id],
            account_indices=tuple(index[meta.pubkey] for meta in ix.accounts),
            data=ix.data,
        )
        for ix in instructions
    )


# =============================================================================
# Message
# =============================================================================

@dataclass(frozen=True)
class MessageHeader:
    num_required_signatures: int
    num_readonly_signed: int
    num_readonly_unsigned: int


@dataclass(frozen=True)
class Message:
    header: MessageHeader
    account_keys: tuple[Pubkey, ...]
    recent_blockhash: str
    instructions: tuple[CompiledInstruction, ...]

    @classmethod
    def compile(
        cls,
        fee_payer: Pubkey,
        instructions: Sequence[Instruction],
        recent_blockhash: str,
    ) -> "Message":
        layout = order_accounts(fee_payer, instructions)
        return cls(
            header=MessageHeader(
                num_required_signatures=layout.num_signers,
                num_readonly_signed=layout.num_readonly_signed,
                num_readonly_unsigned=layout.num_readonly_unsigned,
            ),
            account_keys=layout.keys,
            recent_blockhash=recent_blockhash,
            instructions=compile_instructions(layout.keys, instructions),
        )

    @property
    def fee_payer(self) -> Optional[Pubkey]:
        return self.account_keys[0] if self.account_keys else None

    @property
    def signer_keys(self) -> tuple[Pubkey, ...]:
        return self.account_keys[: self.header.num_required_signatures]

    def is_signer(self, index: int) -> bool:
        return index < self.header.num_required_signatures

    def is_writable(self, index: int) -> bool:
        header = self.header
        if index < header.num_required_signatures:
            return index < header.num_required_signatures - header.num_readonly_signed
        return index < len(self.account_keys) - header.num_readonly_unsigned

    def decompile(self) -> list[Instruction]:
        """Resolve compiled instructions back to account metas."""
        result = []
        for compiled in self.instructions:
            result.append(
                Instruction(
                    self.account_keys[compiled.program_id_index],
                    [
                        AccountMeta(
                            self.account_keys[i],
                            self.is_signer(i),
                            self.is_writable(i),
                        )
                        for i in compiled.account_indices
                    ],
                    compiled.data,
                )
            )
        return result

    def serialize(self) -> bytes:
        header = self.header
        out = bytearray(
            [
                header.num_required_signatures,
                header.num_readonly_signed,
                header.num_readonly_unsigned,
            ]
        )
        out += encode_length(len(self.account_keys))
        for key in self.account_keys:
            out += key.raw
        blockhash = base58.b58decode(self.recent_blockhash)
        if len(blockhash) != 32:
            raise ValueError("Recent blockhash must decode to 32 bytes")
        out += blockhash
        out += encode_length(len(self.instructions))
        for ix in self.instructions:
            out.append(ix.program_id_index)
            out += encode_length(len(ix.account_indices))
            out += bytes(ix.account_indices)
            out += encode_length(len(ix.data))
            out += ix.data
        return bytes(out)

    @classmethod
    def deserialize(cls, data: bytes) -> "Message":
        reader = ByteReader(data)
        message = cls._read(reader)
        if reader.remaining:
            raise TransactionDecodeError(f"{reader.remaining} trailing bytes after message")
        return message

    @classmethod
    def _read(cls, reader: ByteReader) -> "Message":
        first = reader.u8()
        if first & 0x80:
            raise TransactionDecodeError("Versioned messages are not supported")
        header = MessageHeader(first, reader.u8(), reader.u8())
        keys = tuple(reader.pubkey() for _ in range(reader.compact_length()))
        if header.num_required_signatures > len(keys):
            raise TransactionDecodeError("Header requires more signers than account keys")
        if header.num_readonly_signed > header.num_required_signatures:
            raise TransactionDecodeError("Readonly signer count exceeds signer count")
        if header.num_readonly_unsigned > len(keys) - header.num_required_signatures:
            raise TransactionDecodeError("Readonly unsigned count exceeds account keys")
        blockhash = base58.b58encode(reader.take(32)).decode("ascii")
        instructions = []
        for _ in range(reader.compact_length()):
            program_index = reader.u8()
            indices = tuple(reader.take(reader.compact_length()))
            ix_data = reader.take(reader.compact_length())
            if program_index >= len(keys) or any(i >= len(keys) for i in indices):
                raise TransactionDecodeError("Instruction references unknown account index")
            instructions.append(CompiledInstruction(program_index, indices, ix_data))
        return cls(header, keys, blockhash, tuple(instructions))

    def digest(self) -> str:
        return hashlib.sha256(self.serialize()).hexdigest()


# =============================================================================
# Transaction
# =============================================================================

@dataclass
class Transaction:
    """A message plus one signature slot per required signer."""

    message: Message
    signatures: list[bytes] = field(default_factory=list)

    def __post_init__(self) -> None:
        required = self.message.header.num_required_signatures
        if not self.signatures:
            self.signatures = [EMPTY_SIGNATURE] * required
        if len(self.signatures) != required:
            raise TransactionDecodeError(
                f"Expected {required} signatures, got {len(self.signatures)}"
            )

    @classmethod
    def new(
        cls,
        fee_payer: Pubkey,
        instructions: Sequence[Instruction],
        recent_blockhash: str,
    ) -> "Transaction":
        return cls(Message.compile(fee_payer, instructions, recent_blockhash))

    @property
    def fee_payer(self) -> Optional[Pubkey]:
        return self.message.fee_payer

    @property
    def signature(self) -> Optional[str]:
        """Transaction id: the fee payer's signature, once present."""
        if not self.signatures or self.signatures[0] == EMPTY_SIGNATURE:
            return None
        return base58.b58encode(self.signatures[0]).decode("ascii")

    def signer_index(self, pubkey: Pubkey) -> int:
        try:
            index = self.message.account_keys.index(pubkey)
        except ValueError:
            raise ValueError(f"{pubkey} is not part of this transaction") from None
        if not self.message.is_signer(index):
            raise ValueError(f"{pubkey} is not a required signer")
        return index

    def sign(self, *keypairs: Keypair) -> None:
        """Fill the signature slot of each keypair, leaving others untouched."""
        payload = self.message.serialize()
        for keypair in keypairs:
            self.signatures[self.signer_index(keypair.pubkey)] = keypair.sign(payload)

    def is_signed_by(self, pubkey: Pubkey) -> bool:
        return self.signatures[self.signer_index(pubkey)] != EMPTY_SIGNATURE

    def invalid_signers(self) -> list[Pubkey]:
        """Signers whose slot is empty or whose signature does not verify."""
        payload = self.message.serialize()
        return [
            key
            for key, sig in zip(self.message.signer_keys, self.signatures)
            if sig == EMPTY_SIGNATURE or not verify_signature(key, payload, sig)
        ]

    def verify_signatures(self) -> bool:
        return not self.invalid_signers()

    def serialize(self) -> bytes:
        out = bytearray(encode_length(len(self.signatures)))
        for sig in self.signatures:
            out += sig
        out += self.message.serialize()
        return bytes(out)

    @classmethod
    def deserialize(cls, data: bytes) -> "Transaction":
        reader = ByteReader(bytes(data))
        signatures = [reader.take(SIGNATURE_LENGTH) for _ in range(reader.compact_length())]
        message = Message._read(reader)
        if reader.remaining:
            raise TransactionDecodeError(f"{reader.remaining} trailing bytes after transaction")
        if len(signatures) != message.header.num_required_signatures:
            raise TransactionDecodeError(
                f"Expected {message.header.num_required_signatures} signatures, "
                f"got {len(signatures)}"
            )
        return cls(message, signatures)

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    @classmethod
    def from_base64(cls, encoded: str) -> "Transaction":
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise TransactionDecodeError("Transaction is not valid base64") from e
        return cls.deserialize(raw)

    def copy(self) -> "Transaction":
        return Transaction(self.message, list(self.signatures))
