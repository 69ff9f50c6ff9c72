"""
Centralized constants for payrail.

Program identifiers, supported settlement tokens and the defaults used by
the retry, confirmation and logging layers live here so the numbers that
govern on-ledger behaviour are defined in exactly one place.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Final


# =============================================================================
# Ledger programs
# =============================================================================

class Programs:
    """Program ids the orchestrator builds instructions for."""

    SYSTEM: Final[str] = "11111111111111111111111111111111"
    TOKEN: Final[str] = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
    ASSOCIATED_TOKEN: Final[str] = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
    MEMO: Final[str] = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"
    MULTISIG: Final[str] = "SQDS4ep65T869zMMBKyuUq6aD6EgTu8psMjkvj52pCf"


# SPL token instruction tags
TOKEN_IX_TRANSFER: Final[int] = 3
TOKEN_IX_TRANSFER_CHECKED: Final[int] = 12

# System program instruction tags (u32 little endian)
SYSTEM_IX_TRANSFER: Final[int] = 2
SYSTEM_IX_TRANSFER_WITH_SEED: Final[int] = 11


# =============================================================================
# Settlement tokens
# =============================================================================

class TokenMints:
    """Mainnet mints for supported stablecoins."""

    USDC: Final[str] = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
    USDT: Final[str] = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
    EURC: Final[str] = "HzwqbKZw8HxMN6bF2yFZNrht3c2iXXzpKcFu7uBEDKtr"


TOKEN_DECIMALS: Final[dict[str, int]] = {
    TokenMints.USDC: 6,
    TokenMints.USDT: 6,
    TokenMints.EURC: 6,
}


# =============================================================================
# Audit trail
# =============================================================================

class AuditConfig:
    """Audit fingerprint and encrypted record settings."""

    MEMO_SCHEMA_VERSION: Final[str] = "1.0"
    HASH_HEX_LENGTH: Final[int] = 64
    ENCRYPTION_ALGORITHM: Final[str] = "AES-256-GCM"
    KEY_BYTES: Final[int] = 32
    NONCE_BYTES: Final[int] = 12
    MAX_INVOICE_NUMBER_LENGTH: Final[int] = 64
    VAULT_MEMO_PREFIX: Final[str] = "TX-"


# =============================================================================
# Fees
# =============================================================================

DEFAULT_TRANSACTION_FEE: Final[Decimal] = Decimal("15")


# =============================================================================
# Retry and confirmation
# =============================================================================

class RetryDefaults:
    """Retry configuration for submission and RPC calls."""

    DEFAULT_MAX_RETRIES: Final[int] = 3
    DEFAULT_BASE_DELAY: Final[float] = 1.0
    DEFAULT_MAX_DELAY: Final[float] = 60.0
    DEFAULT_EXPONENTIAL_BASE: Final[float] = 2.0
    DEFAULT_JITTER: Final[float] = 0.1

    # Submission of a fully signed phase
    SUBMIT_MAX_RETRIES: Final[int] = 3
    SUBMIT_BASE_DELAY: Final[float] = 0.5
    SUBMIT_MAX_DELAY: Final[float] = 5.0


class ConfirmationDefaults:
    """Finality polling budget."""

    MAX_POLLS: Final[int] = 10
    TIMEOUT_SECONDS: Final[float] = 60.0
    POLL_INTERVAL_SECONDS: Final[float] = 2.0
    COMMITMENT: Final[str] = "confirmed"


class SignerDefaults:
    """Fee-payer signer bookkeeping."""

    # Number of recently signed message digests remembered for replay refusal
    SIGNED_DIGEST_CACHE_SIZE: Final[int] = 10_000


# =============================================================================
# Logging
# =============================================================================

class LoggingConfig:
    """Logging-related constants."""

    SENSITIVE_FIELDS: Final[frozenset[str]] = frozenset({
        "password",
        "secret",
        "private_key",
        "privateKey",
        "secret_key",
        "secretKey",
        "fee_payer_secret",
        "comprehensive_data_key",
        "encryption_key",
        "encryption_keys",
        "seed",
        "authorization",
        "credential",
        "credentials",
    })

    MASK_PATTERN: Final[str] = "***REDACTED***"
    MAX_LOG_MESSAGE_LENGTH: Final[int] = 10_000
