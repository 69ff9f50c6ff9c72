"""
Multisig vault program helpers.

Address derivation, account decoding and instruction builders for the
vault program that custodies organization funds. A payment moves through
three instructions on this program: a vault transaction is created holding
the compiled transfer, a proposal for it is created and approved, and the
approved transaction is executed with the vault signing by derivation.

Instruction data uses 8-byte method discriminators followed by
borsh-encoded arguments.
"""
from __future__ import annotations

import functools
import hashlib
import struct
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from .constants import Programs
from .exceptions import TransactionDecodeError
from .keys import Pubkey
from .transactions import (
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    AccountMeta,
    CompiledInstruction,
    Instruction,
    ByteReader,
    compile_instructions,
    order_accounts,
)

MULTISIG_PROGRAM_ID = Pubkey.from_string(Programs.MULTISIG)
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string(Programs.ASSOCIATED_TOKEN)

MAX_SEED_LENGTH = 32
PDA_MARKER = b"ProgramDerivedAddress"

SEED_PREFIX = b"multisig"
SEED_MULTISIG = b"multisig"
SEED_VAULT = b"vault"
SEED_TRANSACTION = b"transaction"
SEED_PROPOSAL = b"proposal"


# =============================================================================
# Program derived addresses
# =============================================================================

class _OnCurve(Exception):
    pass


def create_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Pubkey:
    """Hash seeds into an address that no private key can sign for."""
    digest = hashlib.sha256()
    for seed in seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise ValueError(f"Seed exceeds {MAX_SEED_LENGTH} bytes")
        digest.update(seed)
    digest.update(program_id.raw)
    digest.update(PDA_MARKER)
    candidate = Pubkey(digest.digest())
    if candidate.is_on_curve():
        raise _OnCurve()
    return candidate


@functools.lru_cache(maxsize=4096)
def _find(seeds: tuple[bytes, ...], program_id: Pubkey) -> tuple[Pubkey, int]:
    for bump in range(255, -1, -1):
        try:
            return create_program_address([*seeds, bytes([bump])], program_id), bump
        except _OnCurve:
            continue
    raise ValueError("Unable to find a viable program address bump seed")


def find_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> tuple[Pubkey, int]:
    """Derive the canonical (highest bump) program address for seeds."""
    return _find(tuple(bytes(s) for s in seeds), program_id)


def multisig_pda(create_key: Pubkey) -> Pubkey:
    return find_program_address(
        [SEED_PREFIX, SEED_MULTISIG, create_key.raw], MULTISIG_PROGRAM_ID
    )[0]


def vault_pda(multisig: Pubkey, index: int = 0) -> Pubkey:
    return find_program_address(
        [SEED_PREFIX, multisig.raw, SEED_VAULT, bytes([index])], MULTISIG_PROGRAM_ID
    )[0]


def transaction_pda(multisig: Pubkey, index: int) -> Pubkey:
    return find_program_address(
        [SEED_PREFIX, multisig.raw, SEED_TRANSACTION, struct.pack("<Q", index)],
        MULTISIG_PROGRAM_ID,
    )[0]


def proposal_pda(multisig: Pubkey, index: int) -> Pubkey:
    return find_program_address(
        [
            SEED_PREFIX,
            multisig.raw,
            SEED_TRANSACTION,
            struct.pack("<Q", index),
            SEED_PROPOSAL,
        ],
        MULTISIG_PROGRAM_ID,
    )[0]


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    """Token account for (owner, mint); owners may be off-curve vaults."""
    return find_program_address(
        [owner.raw, TOKEN_PROGRAM_ID.raw, mint.raw], ASSOCIATED_TOKEN_PROGRAM_ID
    )[0]


# =============================================================================
# Borsh helpers
# =============================================================================

def _discriminator(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:8]


def _option_string(value: Optional[str]) -> bytes:
    if value is None:
        return b"\x00"
    encoded = value.encode("utf-8")
    return b"\x01" + struct.pack("<I", len(encoded)) + encoded


def _read_option_string(reader: ByteReader) -> Optional[str]:
    tag = reader.u8()
    if tag == 0:
        return None
    if tag != 1:
        raise TransactionDecodeError(f"Invalid option tag {tag}")
    try:
        return reader.take(reader.u32()).decode("utf-8")
    except UnicodeDecodeError as e:
        raise TransactionDecodeError("Option string is not valid utf-8") from e


# =============================================================================
# Vault transaction message
# =============================================================================

@dataclass(frozen=True)
class VaultTransactionMessage:
    """Compiled inner message stored by a vault transaction.

    Same account grouping as a ledger message; lengths are u8 except the
    per-instruction data length, which is u16.
    """

    num_signers: int
    num_writable_signers: int
    num_writable_non_signers: int
    account_keys: tuple[Pubkey, ...]
    instructions: tuple[CompiledInstruction, ...]

    @classmethod
    def compile(cls, vault: Pubkey, instructions: Sequence[Instruction]) -> "VaultTransactionMessage":
        layout = order_accounts(vault, instructions)
        return cls(
            num_signers=layout.num_signers,
            num_writable_signers=layout.num_writable_signers,
            num_writable_non_signers=layout.num_writable_non_signers,
            account_keys=layout.keys,
            instructions=compile_instructions(layout.keys, instructions),
        )

    def is_signer_index(self, index: int) -> bool:
        return index < self.num_signers

    def is_static_writable_index(self, index: int) -> bool:
        if index >= len(self.account_keys):
            return False
        if index < self.num_writable_signers:
            return True
        if index >= self.num_signers:
            return index - self.num_signers < self.num_writable_non_signers
        return False

    def decompile(self) -> list[Instruction]:
        return [
            Instruction(
                self.account_keys[ix.program_id_index],
                [
                    AccountMeta(
                        self.account_keys[i],
                        self.is_signer_index(i),
                        self.is_static_writable_index(i),
                    )
                    for i in ix.account_indices
                ],
                ix.data,
            )
            for ix in self.instructions
        ]

    def encode(self) -> bytes:
        out = bytearray(
            [self.num_signers, self.num_writable_signers, self.num_writable_non_signers]
        )
        out.append(len(self.account_keys))
        for key in self.account_keys:
            out += key.raw
        out.append(len(self.instructions))
        for ix in self.instructions:
            out.append(ix.program_id_index)
            out.append(len(ix.account_indices))
            out += bytes(ix.account_indices)
            out += struct.pack("<H", len(ix.data))
            out += ix.data
        # no address table lookups
        out.append(0)
        return bytes(out)

    @classmethod
    def decode(cls, data: bytes) -> "VaultTransactionMessage":
        reader = ByteReader(data)
        num_signers, num_writable_signers, num_writable_non_signers = (
            reader.u8(),
            reader.u8(),
            reader.u8(),
        )
        keys = tuple(reader.pubkey() for _ in range(reader.u8()))
        instructions = []
        for _ in range(reader.u8()):
            program_index = reader.u8()
            indices = tuple(reader.take(reader.u8()))
            ix_data = reader.take(reader.u16())
            if program_index >= len(keys) or any(i >= len(keys) for i in indices):
                raise TransactionDecodeError("Vault instruction references unknown account")
            instructions.append(CompiledInstruction(program_index, indices, ix_data))
        if reader.u8() != 0:
            raise TransactionDecodeError("Address table lookups are not supported")
        if reader.remaining:
            raise TransactionDecodeError("Trailing bytes after vault message")
        if num_signers > len(keys) or num_writable_signers > num_signers:
            raise TransactionDecodeError("Inconsistent vault message header")
        return cls(
            num_signers,
            num_writable_signers,
            num_writable_non_signers,
            keys,
            tuple(instructions),
        )


def accounts_for_execute(message: VaultTransactionMessage, vault: Pubkey) -> list[AccountMeta]:
    """Remaining accounts the execute instruction must pass.

    The vault signs by derivation inside the program, so it is never
    marked as a transaction signer.
    """
    return [
        AccountMeta(
            key,
            message.is_signer_index(index) and key != vault,
            message.is_static_writable_index(index),
        )
        for index, key in enumerate(message.account_keys)
    ]


# =============================================================================
# Instructions
# =============================================================================

VAULT_TRANSACTION_CREATE = "vault_transaction_create"
PROPOSAL_CREATE = "proposal_create"
PROPOSAL_APPROVE = "proposal_approve"
VAULT_TRANSACTION_EXECUTE = "vault_transaction_execute"

DISCRIMINATORS: dict[bytes, str] = {
    _discriminator("global", name): name
    for name in (
        VAULT_TRANSACTION_CREATE,
        PROPOSAL_CREATE,
        PROPOSAL_APPROVE,
        VAULT_TRANSACTION_EXECUTE,
    )
}
_DISCRIMINATOR_BY_NAME = {name: disc for disc, name in DISCRIMINATORS.items()}


def vault_transaction_create(
    multisig: Pubkey,
    transaction_index: int,
    creator: Pubkey,
    message: VaultTransactionMessage,
    rent_payer: Optional[Pubkey] = None,
    vault_index: int = 0,
    ephemeral_signers: int = 0,
    memo: Optional[str] = None,
) -> Instruction:
    rent_payer = rent_payer or creator
    encoded = message.encode()
    data = (
        _DISCRIMINATOR_BY_NAME[VAULT_TRANSACTION_CREATE]
        + bytes([vault_index, ephemeral_signers])
        + struct.pack("<I", len(encoded))
        + encoded
        + _option_string(memo)
    )
    return Instruction(
        MULTISIG_PROGRAM_ID,
        [
            AccountMeta(multisig, False, True),
            AccountMeta(transaction_pda(multisig, transaction_index), False, True),
            AccountMeta(creator, True, False),
            AccountMeta(rent_payer, True, True),
            AccountMeta(SYSTEM_PROGRAM_ID, False, False),
        ],
        data,
    )


def proposal_create(
    multisig: Pubkey,
    transaction_index: int,
    creator: Pubkey,
    rent_payer: Optional[Pubkey] = None,
    draft: bool = False,
) -> Instruction:
    rent_payer = rent_payer or creator
    data = (
        _DISCRIMINATOR_BY_NAME[PROPOSAL_CREATE]
        + struct.pack("<Q", transaction_index)
        + bytes([1 if draft else 0])
    )
    return Instruction(
        MULTISIG_PROGRAM_ID,
        [
            AccountMeta(multisig, False, False),
            AccountMeta(proposal_pda(multisig, transaction_index), False, True),
            AccountMeta(creator, True, False),
            AccountMeta(rent_payer, True, True),
            AccountMeta(SYSTEM_PROGRAM_ID, False, False),
        ],
        data,
    )


def proposal_approve(
    multisig: Pubkey,
    transaction_index: int,
    member: Pubkey,
    memo: Optional[str] = None,
) -> Instruction:
    return Instruction(
        MULTISIG_PROGRAM_ID,
        [
            AccountMeta(multisig, False, False),
            AccountMeta(member, True, True),
            AccountMeta(proposal_pda(multisig, transaction_index), False, True),
        ],
        _DISCRIMINATOR_BY_NAME[PROPOSAL_APPROVE] + _option_string(memo),
    )


def vault_transaction_execute(
    multisig: Pubkey,
    transaction_index: int,
    member: Pubkey,
    remaining_accounts: Sequence[AccountMeta],
) -> Instruction:
    return Instruction(
        MULTISIG_PROGRAM_ID,
        [
            AccountMeta(multisig, False, False),
            AccountMeta(proposal_pda(multisig, transaction_index), False, True),
            AccountMeta(transaction_pda(multisig, transaction_index), False, False),
            AccountMeta(member, True, False),
            *remaining_accounts,
        ],
        _DISCRIMINATOR_BY_NAME[VAULT_TRANSACTION_EXECUTE],
    )


@dataclass(frozen=True)
class DecodedVaultInstruction:
    name: str
    accounts: tuple[AccountMeta, ...]
    args: dict[str, Any]

    @property
    def multisig(self) -> Pubkey:
        return self.accounts[0].pubkey


def decode_vault_instruction(instruction: Instruction) -> Optional[DecodedVaultInstruction]:
    """Decode a multisig program instruction; None for other programs.

    Raises TransactionDecodeError for multisig program instructions whose
    arguments cannot be parsed.
    """
    if instruction.program_id != MULTISIG_PROGRAM_ID:
        return None
    name = DISCRIMINATORS.get(instruction.data[:8])
    if name is None:
        raise TransactionDecodeError("Unknown multisig instruction discriminator")
    reader = ByteReader(instruction.data, 8)
    args: dict[str, Any] = {}
    if name == VAULT_TRANSACTION_CREATE:
        args["vault_index"] = reader.u8()
        args["ephemeral_signers"] = reader.u8()
        args["message"] = VaultTransactionMessage.decode(reader.take(reader.u32()))
        args["memo"] = _read_option_string(reader)
    elif name == PROPOSAL_CREATE:
        args["transaction_index"] = reader.u64()
        args["draft"] = reader.u8() == 1
    elif name == PROPOSAL_APPROVE:
        args["memo"] = _read_option_string(reader)
    if reader.remaining:
        raise TransactionDecodeError(f"Trailing bytes in {name} arguments")
    minimum_accounts = {
        VAULT_TRANSACTION_CREATE: 5,
        PROPOSAL_CREATE: 5,
        PROPOSAL_APPROVE: 3,
        VAULT_TRANSACTION_EXECUTE: 4,
    }[name]
    if len(instruction.accounts) < minimum_accounts:
        raise TransactionDecodeError(f"{name} requires {minimum_accounts} accounts")
    return DecodedVaultInstruction(name, instruction.accounts, args)


# =============================================================================
# Multisig account
# =============================================================================

class Permission:
    INITIATE = 1
    VOTE = 2
    EXECUTE = 4
    ALL = 7


@dataclass(frozen=True)
class MultisigMember:
    key: Pubkey
    permissions: int = Permission.ALL


MULTISIG_ACCOUNT_DISCRIMINATOR = _discriminator("account", "Multisig")


@dataclass(frozen=True)
class MultisigAccount:
    create_key: Pubkey
    config_authority: Pubkey
    threshold: int
    time_lock: int
    transaction_index: int
    stale_transaction_index: int
    rent_collector: Optional[Pubkey]
    bump: int
    members: tuple[MultisigMember, ...]

    def member(self, key: Pubkey) -> Optional[MultisigMember]:
        for member in self.members:
            if member.key == key:
                return member
        return None

    def encode(self) -> bytes:
        out = bytearray(MULTISIG_ACCOUNT_DISCRIMINATOR)
        out += self.create_key.raw
        out += self.config_authority.raw
        out += struct.pack("<HIQQ", self.threshold, self.time_lock,
                           self.transaction_index, self.stale_transaction_index)
        if self.rent_collector is None:
            out.append(0)
        else:
            out.append(1)
            out += self.rent_collector.raw
        out.append(self.bump)
        out += struct.pack("<I", len(self.members))
        for member in self.members:
            out += member.key.raw
            out.append(member.permissions)
        return bytes(out)

    @classmethod
    def decode(cls, data: bytes) -> "MultisigAccount":
        if data[:8] != MULTISIG_ACCOUNT_DISCRIMINATOR:
            raise TransactionDecodeError("Account is not a multisig account")
        reader = ByteReader(data, 8)
        create_key = reader.pubkey()
        config_authority = reader.pubkey()
        threshold = reader.u16()
        time_lock = reader.u32()
        transaction_index = reader.u64()
        stale_transaction_index = reader.u64()
        rent_collector = reader.pubkey() if reader.u8() == 1 else None
        bump = reader.u8()
        members = tuple(
            MultisigMember(reader.pubkey(), reader.u8()) for _ in range(reader.u32())
        )
        return cls(
            create_key,
            config_authority,
            threshold,
            time_lock,
            transaction_index,
            stale_transaction_index,
            rent_collector,
            bump,
            members,
        )
