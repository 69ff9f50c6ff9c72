"""
Tests for payrail.validator.

Tests cover:
- Fee payer identity
- Transfers drawing on the fee payer, direct and nested in vault messages
- Declared fee amount
- Required signatures
- Malformed input
- ValidatedPayload issuance
"""
from __future__ import annotations

from decimal import Decimal

import base58
import pytest

from payrail.exceptions import ValidationRejected
from payrail.keys import Keypair
from payrail.models import TokenType, TransactionPhase
from payrail.multisig import (
    VaultTransactionMessage,
    associated_token_address,
    multisig_pda,
    vault_pda,
    vault_transaction_create,
)
from payrail.transactions import Transaction, memo_instruction, system_transfer, token_transfer
from payrail.validator import (
    RejectionReason,
    SecurityValidator,
    SponsorRequest,
    ValidatedPayload,
)

BLOCKHASH = base58.b58encode(bytes(range(32))).decode()
FEE = Decimal("15")
USDC = TokenType.USDC.mint


@pytest.fixture
def validator(fee_payer_keypair) -> SecurityValidator:
    return SecurityValidator(fee_payer_keypair.pubkey, FEE)


@pytest.fixture
def outsider() -> Keypair:
    return Keypair.from_seed(bytes([30]) * 32)


def _request(transaction: Transaction, fee=FEE) -> SponsorRequest:
    return SponsorRequest(
        serialized_transaction=transaction.serialize(),
        expected_fee_amount=fee,
        token_mint=str(USDC),
        organization_id="org_payer",
        phase=TransactionPhase.CREATE,
        invoice_number="INV-1",
    )


def _signed(fee_payer, member: Keypair, instructions) -> Transaction:
    transaction = Transaction.new(fee_payer, instructions, BLOCKHASH)
    transaction.sign(member)
    return transaction


def _has(reasons, code: str) -> bool:
    return any(reason.startswith(code) for reason in reasons)


class TestAllowed:
    """Tests for requests that pass every check."""

    def test_member_signed_transaction(self, validator, fee_payer_keypair, member_keypair):
        transaction = _signed(
            fee_payer_keypair.pubkey,
            member_keypair,
            [memo_instruction("INV-1", signers=[member_keypair.pubkey])],
        )
        payload = validator.validate(_request(transaction))

        assert isinstance(payload, ValidatedPayload)
        assert payload.verdict.allowed is True
        assert payload.serialized_transaction == transaction.serialize()
        assert len(payload.message_digest) == 64

    def test_vault_create_paying_payee(self, validator, fee_payer_keypair, member_keypair):
        """A vault transfer that does not touch the fee payer is allowed."""
        multisig = multisig_pda(member_keypair.pubkey)
        vault = vault_pda(multisig)
        payee_vault = vault_pda(multisig_pda(Keypair.from_seed(bytes([31]) * 32).pubkey))
        transfer = token_transfer(
            associated_token_address(vault, USDC),
            associated_token_address(payee_vault, USDC),
            vault,
            10,
        )
        message = VaultTransactionMessage.compile(vault, [transfer])
        create = vault_transaction_create(multisig, 1, member_keypair.pubkey, message)
        transaction = _signed(fee_payer_keypair.pubkey, member_keypair, [create])

        assert validator.inspect(_request(transaction)).allowed is True


class TestFeePayer:
    """Tests for fee payer identity and use."""

    def test_other_fee_payer_rejected(self, validator, member_keypair):
        transaction = _signed(
            member_keypair.pubkey,
            member_keypair,
            [memo_instruction("x", signers=[member_keypair.pubkey])],
        )
        with pytest.raises(ValidationRejected) as exc_info:
            validator.validate(_request(transaction))
        assert _has(exc_info.value.reasons, RejectionReason.INVALID_FEE_PAYER)

    def test_fee_payer_referenced_by_instruction(self, validator, fee_payer_keypair, member_keypair):
        """The fee payer may not appear in any instruction."""
        transaction = _signed(
            fee_payer_keypair.pubkey,
            member_keypair,
            [memo_instruction("x", signers=[member_keypair.pubkey, fee_payer_keypair.pubkey])],
        )
        verdict = validator.inspect(_request(transaction))
        assert _has(verdict.reasons, RejectionReason.UNAUTHORIZED_FEE_PAYER_USE)


class TestDrainProtection:
    """Tests for transfers out of fee payer accounts."""

    def test_token_transfer_from_fee_payer_account(self, validator, fee_payer_keypair, member_keypair, outsider):
        source = associated_token_address(fee_payer_keypair.pubkey, USDC)
        transaction = _signed(
            fee_payer_keypair.pubkey,
            member_keypair,
            [token_transfer(source, associated_token_address(outsider.pubkey, USDC), member_keypair.pubkey, 5)],
        )
        verdict = validator.inspect(_request(transaction))

        assert verdict.allowed is False
        assert _has(verdict.reasons, RejectionReason.UNAUTHORIZED_TRANSFER)

    def test_native_transfer_from_fee_payer(self, validator, fee_payer_keypair, member_keypair, outsider):
        transaction = _signed(
            fee_payer_keypair.pubkey,
            member_keypair,
            [
                system_transfer(fee_payer_keypair.pubkey, outsider.pubkey, 1_000),
                memo_instruction("x", signers=[member_keypair.pubkey]),
            ],
        )
        verdict = validator.inspect(_request(transaction))
        assert _has(verdict.reasons, RejectionReason.UNAUTHORIZED_TRANSFER)
        assert _has(verdict.reasons, RejectionReason.UNAUTHORIZED_FEE_PAYER_USE)

    def test_transfer_nested_in_vault_message(self, validator, fee_payer_keypair, member_keypair, outsider):
        """Drains hidden inside a vault transaction are caught."""
        multisig = multisig_pda(member_keypair.pubkey)
        vault = vault_pda(multisig)
        drain = token_transfer(
            associated_token_address(fee_payer_keypair.pubkey, USDC),
            associated_token_address(outsider.pubkey, USDC),
            vault,
            5,
        )
        message = VaultTransactionMessage.compile(vault, [drain])
        create = vault_transaction_create(multisig, 1, member_keypair.pubkey, message)
        transaction = _signed(fee_payer_keypair.pubkey, member_keypair, [create])

        verdict = validator.inspect(_request(transaction))

        assert verdict.allowed is False
        assert any("vault instruction 0.0" in reason for reason in verdict.reasons)

    def test_protected_accounts(self, validator, fee_payer_keypair):
        protected = validator.protected_accounts
        assert fee_payer_keypair.pubkey in protected
        assert associated_token_address(fee_payer_keypair.pubkey, TokenType.EURC.mint) in protected
        assert len(protected) == 4


class TestFeeAndSignatures:
    """Tests for the declared fee and required signatures."""

    def _valid(self, fee_payer_keypair, member_keypair) -> Transaction:
        return _signed(
            fee_payer_keypair.pubkey,
            member_keypair,
            [memo_instruction("x", signers=[member_keypair.pubkey])],
        )

    def test_fee_mismatch(self, validator, fee_payer_keypair, member_keypair):
        verdict = validator.inspect(_request(self._valid(fee_payer_keypair, member_keypair), Decimal("14")))
        assert verdict.reasons == (f"{RejectionReason.INVALID_FEE_AMOUNT}: expected 15, got 14",)

    def test_fee_not_a_number(self, validator, fee_payer_keypair, member_keypair):
        verdict = validator.inspect(_request(self._valid(fee_payer_keypair, member_keypair), "abc"))
        assert _has(verdict.reasons, RejectionReason.INVALID_FEE_AMOUNT)

    def test_equal_fee_in_other_notation(self, validator, fee_payer_keypair, member_keypair):
        verdict = validator.inspect(_request(self._valid(fee_payer_keypair, member_keypair), "15.00"))
        assert verdict.allowed is True

    def test_missing_member_signature(self, validator, fee_payer_keypair, member_keypair):
        transaction = Transaction.new(
            fee_payer_keypair.pubkey,
            [memo_instruction("x", signers=[member_keypair.pubkey])],
            BLOCKHASH,
        )
        verdict = validator.inspect(_request(transaction))
        assert verdict.reasons == (f"{RejectionReason.MISSING_SIGNATURE}: {member_keypair.pubkey}",)

    def test_every_failure_reported(self, validator, fee_payer_keypair, member_keypair):
        transaction = Transaction.new(
            fee_payer_keypair.pubkey,
            [memo_instruction("x", signers=[member_keypair.pubkey])],
            BLOCKHASH,
        )
        with pytest.raises(ValidationRejected) as exc_info:
            validator.validate(_request(transaction, Decimal("1")))
        reasons = exc_info.value.reasons
        assert _has(reasons, RejectionReason.INVALID_FEE_AMOUNT)
        assert _has(reasons, RejectionReason.MISSING_SIGNATURE)
        assert exc_info.value.details["invoice_number"] == "INV-1"
        assert exc_info.value.details["phase"] == "create"


class TestMalformed:
    """Tests for unparseable input."""

    def test_garbage_bytes(self, validator):
        request = SponsorRequest(b"\x01\x02", FEE, str(USDC))
        verdict = validator.inspect(request)
        assert verdict.allowed is False
        assert _has(verdict.reasons, RejectionReason.MALFORMED_TRANSACTION)
        with pytest.raises(ValidationRejected):
            validator.validate(request)


class TestValidatedPayload:
    """Tests for payload issuance."""

    def test_cannot_be_constructed_directly(self, validator, fee_payer_keypair, member_keypair):
        transaction = _signed(
            fee_payer_keypair.pubkey,
            member_keypair,
            [memo_instruction("x", signers=[member_keypair.pubkey])],
        )
        request = _request(transaction)
        verdict = validator.inspect(request)
        with pytest.raises(TypeError):
            ValidatedPayload(request, verdict, "00" * 32)

    def test_is_immutable(self, validator, fee_payer_keypair, member_keypair):
        transaction = _signed(
            fee_payer_keypair.pubkey,
            member_keypair,
            [memo_instruction("x", signers=[member_keypair.pubkey])],
        )
        payload = validator.validate(_request(transaction))
        with pytest.raises(AttributeError):
            payload.serialized_transaction = b"other"

    def test_verdicts_are_fresh(self, validator, fee_payer_keypair, member_keypair):
        """Each inspection produces its own verdict."""
        request = _request(
            _signed(
                fee_payer_keypair.pubkey,
                member_keypair,
                [memo_instruction("x", signers=[member_keypair.pubkey])],
            )
        )
        assert validator.inspect(request) is not validator.inspect(request)
