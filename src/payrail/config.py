"""Canonical configuration surface for payrail services."""
from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from .constants import (
    AuditConfig,
    ConfirmationDefaults,
    DEFAULT_TRANSACTION_FEE,
    RetryDefaults,
)
from .exceptions import PayrailConfigurationError
from .keys import Keypair, Pubkey


class ConfirmationSettings(BaseModel):
    """Finality polling budget."""
    max_polls: int = Field(default=ConfirmationDefaults.MAX_POLLS, ge=1)
    timeout_seconds: float = Field(default=ConfirmationDefaults.TIMEOUT_SECONDS, gt=0)
    poll_interval_seconds: float = Field(default=ConfirmationDefaults.POLL_INTERVAL_SECONDS, ge=0)


class SubmissionSettings(BaseModel):
    """Retry policy for transient submission failures."""
    max_retries: int = Field(default=RetryDefaults.SUBMIT_MAX_RETRIES, ge=0)
    base_delay: float = Field(default=RetryDefaults.SUBMIT_BASE_DELAY, ge=0)
    max_delay: float = Field(default=RetryDefaults.SUBMIT_MAX_DELAY, ge=0)


class PayrailSettings(BaseSettings):
    """Main payrail configuration."""

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Ledger RPC
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    commitment: Literal["processed", "confirmed", "finalized"] = "confirmed"
    rpc_timeout_seconds: float = 30.0

    # Custodial fee payer (base58 secret, backend only)
    fee_payer_secret: str = Field(default="", repr=False)

    # Flat service fee
    fee_collector: str = ""
    transaction_fee: Decimal = DEFAULT_TRANSACTION_FEE

    # Audit trail
    memo_schema_version: str = AuditConfig.MEMO_SCHEMA_VERSION

    confirmation: ConfirmationSettings = Field(default_factory=ConfirmationSettings)
    submission: SubmissionSettings = Field(default_factory=SubmissionSettings)

    class Config:
        env_prefix = "PAYRAIL_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("fee_payer_secret")
    @classmethod
    def validate_fee_payer_secret(cls, v: str) -> str:
        env = os.getenv("PAYRAIL_ENVIRONMENT", "dev")
        if env != "dev" and not v:
            raise ValueError(
                "PAYRAIL_FEE_PAYER_SECRET is required outside dev. "
                "Provide the base58 secret of the fee payer keypair."
            )
        return v

    @field_validator("fee_collector")
    @classmethod
    def validate_fee_collector(cls, v: str) -> str:
        if v:
            try:
                Pubkey.from_string(v)
            except ValueError as e:
                raise ValueError("fee_collector must be a base58 address") from e
        return v

    @field_validator("transaction_fee")
    @classmethod
    def validate_transaction_fee(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("transaction_fee cannot be negative")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "prod"

    def fee_payer_keypair(self) -> Keypair:
        """Load the custodial keypair. Call only inside the signer boundary."""
        if not self.fee_payer_secret:
            raise PayrailConfigurationError("Fee payer secret is not configured")
        return Keypair.from_base58(self.fee_payer_secret)

    def fee_collector_pubkey(self) -> Optional[Pubkey]:
        return Pubkey.from_string(self.fee_collector) if self.fee_collector else None


@lru_cache
def get_settings() -> PayrailSettings:
    return PayrailSettings()
