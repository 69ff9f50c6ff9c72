"""
Pytest configuration for payrail tests.
"""
from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("PAYRAIL_ENVIRONMENT", "dev")

from payrail.audit_store_memory import InMemoryAuditRecordStore  # noqa: E402
from payrail.builder import PhaseBuilder  # noqa: E402
from payrail.confirmation import ConfirmationConfig, ConfirmationEngine  # noqa: E402
from payrail.fee_payer import FeePayerSigner, submission_retry_config  # noqa: E402
from payrail.keys import Keypair, Pubkey  # noqa: E402
from payrail.models import AccountRef, Invoice, PaymentBatch, PaymentContext, TokenType  # noqa: E402
from payrail.orchestrator import PaymentOrchestrator  # noqa: E402
from payrail.simulated import SimulatedLedger, SimulatedWallet, StaticVendorDirectory  # noqa: E402
from payrail.validator import SecurityValidator  # noqa: E402

CONFIGURED_FEE = Decimal("15")
OPENING_BALANCE = 1_000_000_000  # 1000 USDC


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def fee_payer_keypair() -> Keypair:
    return Keypair.from_seed(bytes([1]) * 32)


@pytest.fixture
def member_keypair() -> Keypair:
    return Keypair.from_seed(bytes([2]) * 32)


@pytest.fixture
def fee_collector() -> Pubkey:
    return Keypair.from_seed(bytes([3]) * 32).pubkey


@dataclass
class Network:
    """A simulated ledger with a funded payer vault and a payee vault."""

    ledger: SimulatedLedger
    fee_payer: Keypair
    member: Keypair
    fee_collector: Pubkey
    payer_multisig: Pubkey
    payee_multisig: Pubkey
    fee_collector_account: Pubkey
    token: TokenType = TokenType.USDC

    def add_payer(self, balance: int = OPENING_BALANCE) -> Pubkey:
        multisig = self.ledger.create_multisig([self.member.pubkey])
        self.ledger.fund_vault(multisig, self.token.mint, balance)
        return multisig


@pytest.fixture
def network(fee_payer_keypair, member_keypair, fee_collector) -> Network:
    ledger = SimulatedLedger()
    mint = TokenType.USDC.mint
    payer = ledger.create_multisig([member_keypair.pubkey])
    ledger.fund_vault(payer, mint, OPENING_BALANCE)
    payee = ledger.create_multisig([Keypair.from_seed(bytes([4]) * 32).pubkey])
    ledger.fund_vault(payee, mint, 0)
    collector_account = ledger.create_token_account(fee_collector, mint, 0)
    return Network(
        ledger=ledger,
        fee_payer=fee_payer_keypair,
        member=member_keypair,
        fee_collector=fee_collector,
        payer_multisig=payer,
        payee_multisig=payee,
        fee_collector_account=collector_account,
    )


@pytest.fixture
def make_batch(network):
    """Factory for batches paying the network's payee vault."""

    def _make(
        *invoices: tuple[str, str],
        fee: Decimal = CONFIGURED_FEE,
        payer: Optional[Pubkey] = None,
        payee: Optional[AccountRef] = None,
        context: Optional[PaymentContext] = None,
        via_vendor: bool = False,
    ) -> PaymentBatch:
        invoices = invoices or (("INV-1", "100.00"),)
        return PaymentBatch(
            invoices=tuple(Invoice(number, Decimal(amount)) for number, amount in invoices),
            currency=TokenType.USDC,
            payer_account=AccountRef(str(payer or network.payer_multisig), organization_id="org_payer"),
            payee_account=None
            if via_vendor
            else payee or AccountRef(str(network.payee_multisig), organization_id="org_payee"),
            total_fee=fee,
            context=context or PaymentContext(payer_organization_id="org_payer"),
        )

    return _make


@pytest.fixture
def store() -> InMemoryAuditRecordStore:
    return InMemoryAuditRecordStore()


@pytest.fixture
def fast_confirmation() -> ConfirmationConfig:
    return ConfirmationConfig(max_polls=3, timeout_seconds=5, poll_interval_seconds=0)


@pytest.fixture
def make_orchestrator(network, store, fast_confirmation):
    """Factory wiring every component against the simulated ledger."""

    def _make(
        wallet: Optional[SimulatedWallet] = None,
        vendors: Optional[StaticVendorDirectory] = None,
        configured_fee: Decimal = CONFIGURED_FEE,
    ) -> PaymentOrchestrator:
        ledger = network.ledger
        signer = FeePayerSigner(
            network.fee_payer,
            ledger,
            submission_retry_config(max_retries=2, base_delay=0, max_delay=0),
        )
        return PaymentOrchestrator(
            builder=PhaseBuilder(ledger, signer.public_key, network.fee_collector),
            validator=SecurityValidator(signer.public_key, configured_fee),
            signer=signer,
            confirmation=ConfirmationEngine(ledger, fast_confirmation),
            store=store,
            wallet=wallet or SimulatedWallet(network.member),
            vendors=vendors,
        )

    return _make
