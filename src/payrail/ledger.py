"""Ledger JSON-RPC client."""
from __future__ import annotations

import base64
import json
import logging
from typing import TYPE_CHECKING, Any, Optional

import httpx

from .constants import Programs
from .exceptions import BuildError, RPCError, SubmissionError, TransactionDecodeError
from .models import AccountState, SubmissionState, SubmissionStatus
from .multisig import MultisigAccount

if TYPE_CHECKING:
    from .config import PayrailSettings

logger = logging.getLogger(__name__)

# JSON-RPC codes that mean the node refused the transaction itself
# (preflight simulation failure, bad signature, already processed)
NON_RETRYABLE_SEND_CODES = frozenset({-32002, -32003})

COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


def _is_already_processed(error: RPCError) -> bool:
    data = error.details.get("data")
    if isinstance(data, dict) and data.get("err") == "AlreadyProcessed":
        return True
    return "already been processed" in error.message


def describe_account(state: AccountState) -> dict[str, Any]:
    return {
        "address": state.address,
        "exists": state.exists,
        "owner": state.owner,
        "lamports": state.lamports,
        "data_length": len(state.data),
    }


class SolanaLedgerClient:
    """Async JSON-RPC client for the ledger network.

    Uses raw httpx; every call is a JSON-RPC 2.0 POST. Transport failures
    surface as RPCError, and failures of ``sendTransaction`` as
    SubmissionError so the signer's retry policy can tell transient
    failures from refused transactions.
    """

    def __init__(
        self,
        rpc_url: str,
        commitment: str = "confirmed",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.commitment = commitment
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._request_id = 0

    @classmethod
    def from_settings(cls, settings: "PayrailSettings") -> "SolanaLedgerClient":
        return cls(
            settings.rpc_url,
            commitment=settings.commitment,
            timeout=settings.rpc_timeout_seconds,
        )

    async def _rpc(self, method: str, params: Optional[list[Any]] = None) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        try:
            resp = await self._client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise RPCError(
                f"{method} returned HTTP {e.response.status_code}", method=method
            ) from e
        except httpx.HTTPError as e:
            raise RPCError(f"{method} transport error: {e}", method=method) from e
        except ValueError as e:
            raise RPCError(f"{method} returned invalid JSON", method=method) from e

        if "error" in data:
            error = data["error"] or {}
            raise RPCError(
                error.get("message", "Unknown RPC error"),
                method=method,
                code=error.get("code"),
                details={"data": error.get("data")},
            )
        return data.get("result")

    async def resolve_account(self, address: str) -> AccountState:
        result = await self._rpc(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        value = (result or {}).get("value")
        if value is None:
            return AccountState(address=address, exists=False)
        raw = value.get("data") or ["", "base64"]
        return AccountState(
            address=address,
            exists=True,
            owner=value.get("owner"),
            lamports=int(value.get("lamports", 0)),
            data=base64.b64decode(raw[0]) if raw[0] else b"",
        )

    async def get_sequence_counter(self, multisig_address: str) -> int:
        state = await self.resolve_account(multisig_address)
        if not state.exists or state.owner != Programs.MULTISIG:
            raise BuildError(f"Multisig {multisig_address} not found")
        try:
            return MultisigAccount.decode(state.data).transaction_index
        except TransactionDecodeError as e:
            raise BuildError(f"Multisig {multisig_address} could not be decoded") from e

    async def get_latest_blockhash(self) -> str:
        result = await self._rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        return result["value"]["blockhash"]

    async def submit(self, signed_transaction: bytes) -> str:
        encoded = base64.b64encode(signed_transaction).decode("ascii")
        try:
            signature = await self._rpc(
                "sendTransaction",
                [
                    encoded,
                    {
                        "encoding": "base64",
                        "skipPreflight": False,
                        "preflightCommitment": self.commitment,
                        "maxRetries": 3,
                    },
                ],
            )
        except RPCError as e:
            retryable = e.code not in NON_RETRYABLE_SEND_CODES
            raise SubmissionError(
                f"sendTransaction failed: {e.message}",
                retryable=retryable,
                details=e.details,
                already_processed=_is_already_processed(e),
            ) from e
        logger.info("Transaction sent: %s", signature)
        return signature

    async def get_status(self, submission_id: str) -> SubmissionStatus:
        result = await self._rpc(
            "getSignatureStatuses",
            [[submission_id], {"searchTransactionHistory": True}],
        )
        statuses = (result or {}).get("value") or []
        if not statuses or statuses[0] is None:
            return SubmissionStatus(SubmissionState.PENDING)
        status = statuses[0]
        if status.get("err"):
            return SubmissionStatus(
                SubmissionState.FAILED,
                error=json.dumps(status["err"], sort_keys=True),
                slot=status.get("slot"),
            )
        reached = COMMITMENT_RANK.get(status.get("confirmationStatus") or "", -1)
        if reached >= COMMITMENT_RANK.get(self.commitment, 1):
            return SubmissionStatus(SubmissionState.SUCCESS, slot=status.get("slot"))
        return SubmissionStatus(SubmissionState.PENDING, slot=status.get("slot"))

    async def close(self) -> None:
        await self._client.aclose()
