"""
Ledger audit log: logAlertTriggered(owner, metricId, entryIndex, ruleCommitment, timestamp).

- Builds the transaction (nonce from pending, eth_estimateGas, eth_gasPrice) and
  signs it locally with the worker key (eth_account).
- Sends with eth_sendRawTransaction and polls for the receipt (1 confirmation).
- Best-effort: log_trigger() never raises. "not authorized to log" is a warning
  (the worker may not hold the alert-bot role yet); anything else is an error.
  Neither aborts delivery of the trigger.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
from eth_utils import decode_hex, to_checksum_address

from backend_kpivault.core.exceptions import LedgerAuthorizationError, LedgerError, RpcError
from backend_kpivault.kpivault_logging import get_logger
from backend_kpivault.ledger.abi import (
    NOT_AUTHORIZED_TO_LOG,
    decode_revert_reason,
    encode_log_alert_triggered,
)
from backend_kpivault.ledger.rpc import JsonRpcClient

logger = get_logger(__name__)

DEFAULT_RECEIPT_TIMEOUT_SEC = 120.0
DEFAULT_RECEIPT_POLL_INTERVAL_SEC = 2.0
# Headroom over eth_estimateGas
GAS_LIMIT_MULTIPLIER = 1.2


def _is_not_authorized(error: RpcError) -> bool:
    reason = decode_revert_reason(error.data) or ""
    text = f"{error} {reason}".lower()
    return NOT_AUTHORIZED_TO_LOG in text


def _commitment_bytes(commitment: str) -> bytes:
    try:
        raw = decode_hex(commitment)
    except (ValueError, TypeError) as e:
        raise LedgerError(f"rule commitment is not hex: {commitment!r}") from e
    if len(raw) != 32:
        raise LedgerError(f"rule commitment must be 32 bytes (got {len(raw)})")
    return raw


class AuditLedgerClient:
    """Writes best-effort audit entries for triggered alerts."""

    def __init__(
        self,
        rpc: JsonRpcClient,
        account: Any,
        contract_address: str,
        chain_id: int,
        *,
        receipt_timeout_sec: float = DEFAULT_RECEIPT_TIMEOUT_SEC,
        receipt_poll_interval_sec: float = DEFAULT_RECEIPT_POLL_INTERVAL_SEC,
    ) -> None:
        self._rpc = rpc
        self._account = account
        self._contract_address = to_checksum_address(contract_address)
        self._chain_id = chain_id
        self._receipt_timeout = receipt_timeout_sec
        self._receipt_poll_interval = receipt_poll_interval_sec
        # nonce fetch + send must not interleave between concurrent triggers
        self._send_lock = asyncio.Lock()

    async def log_trigger(
        self,
        owner: str,
        metric_id: int,
        entry_index: int,
        commitment: str,
    ) -> str | None:
        """Write the audit entry and wait for inclusion. Returns tx hash, or None on any failure."""
        try:
            tx_hash = await self._submit(owner, metric_id, entry_index, commitment)
            await self._wait_for_receipt(tx_hash)
        except LedgerAuthorizationError as e:
            logger.warning(
                "audit_log_unauthorized",
                owner=owner,
                entry_index=entry_index,
                worker_address=self._account.address,
                error=str(e),
            )
            return None
        except (LedgerError, httpx.HTTPError, ValueError) as e:
            logger.error(
                "audit_log_failed",
                owner=owner,
                entry_index=entry_index,
                error=str(e),
            )
            return None
        logger.info(
            "audit_log_written",
            owner=owner,
            entry_index=entry_index,
            tx_hash=tx_hash,
        )
        return tx_hash

    async def _submit(self, owner: str, metric_id: int, entry_index: int, commitment: str) -> str:
        data = encode_log_alert_triggered(
            owner,
            metric_id,
            entry_index,
            _commitment_bytes(commitment),
            int(time.time()),
        )
        call = {"from": self._account.address, "to": self._contract_address, "data": data}
        async with self._send_lock:
            try:
                gas = int(await self._rpc.call("eth_estimateGas", [call]), 16)
            except RpcError as e:
                if _is_not_authorized(e):
                    raise LedgerAuthorizationError(str(e)) from e
                raise
            nonce = int(
                await self._rpc.call("eth_getTransactionCount", [self._account.address, "pending"]),
                16,
            )
            gas_price = int(await self._rpc.call("eth_gasPrice"), 16)
            tx = {
                "to": self._contract_address,
                "value": 0,
                "data": data,
                "nonce": nonce,
                "gas": int(gas * GAS_LIMIT_MULTIPLIER),
                "gasPrice": gas_price,
                "chainId": self._chain_id,
            }
            signed = self._account.sign_transaction(tx)
            raw = signed.raw_transaction.hex()
            if not raw.startswith("0x"):
                raw = "0x" + raw
            try:
                return await self._rpc.call("eth_sendRawTransaction", [raw])
            except RpcError as e:
                if _is_not_authorized(e):
                    raise LedgerAuthorizationError(str(e)) from e
                raise

    async def _wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        """Poll eth_getTransactionReceipt until included or timeout. Reverted = LedgerError."""
        deadline = time.monotonic() + self._receipt_timeout
        while True:
            receipt = await self._rpc.call("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                if int(str(receipt.get("status", "0x1")), 16) == 0:
                    raise LedgerError(f"audit transaction {tx_hash} reverted")
                return receipt
            if time.monotonic() >= deadline:
                raise LedgerError(
                    f"audit transaction {tx_hash} not included within {self._receipt_timeout}s"
                )
            await asyncio.sleep(self._receipt_poll_interval)
