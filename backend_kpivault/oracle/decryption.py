"""
Decryption oracle: reveal encrypted KPI values for rule evaluation.

Two implementations, chosen once at startup:
- DisabledDecryptionOracle: capability off (ENABLE_NODE_DECRYPT=false). decrypt()
  always fails fast with OracleDisabled and the worker runs listener-only.
- RelayerDecryptionOracle: user-decrypt round trip against the FHEVM relayer:
  ephemeral X25519 key pair, EIP-712 UserDecryptRequestVerification signed
  by the worker key (time-boxed by startTimestamp + durationDays), and one
  batched POST covering the value handle and the note handle when present.

Relayer integers carry two implied decimals and are divided by VALUE_SCALE.
Timeouts and retries live here only; callers never retry decryption.
"""

from __future__ import annotations

import asyncio
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from eth_account.messages import encode_typed_data
from eth_utils import to_checksum_address

from backend_kpivault.alerts.models import VALUE_SCALE, DecryptedValue
from backend_kpivault.core.exceptions import (
    MissingCiphertext,
    OracleDisabled,
    OracleError,
    OracleTimeout,
)
from backend_kpivault.kpivault_logging import get_logger
from backend_kpivault.ledger.models import RawMetricEntry

logger = get_logger(__name__)

USER_DECRYPT_PATH = "/v1/user-decrypt"
EIP712_DOMAIN_NAME = "Decryption"
EIP712_DOMAIN_VERSION = "1"

DEFAULT_DECRYPT_TIMEOUT_SEC = 60.0
DEFAULT_DECRYPT_RETRIES = 5
DEFAULT_DURATION_DAYS = 10


def parse_raw_value(raw: Any) -> int | float:
    """Relayer cleartext (JSON number or numeric string) -> scaled number. Raises OracleError."""
    if raw is None:
        raise OracleError("Decrypt result missing KPI value")
    if isinstance(raw, bool):
        raise OracleError(f"Failed to parse decrypted KPI value ({raw!r})")
    if isinstance(raw, (int, float)):
        numeric: int | float = raw
    else:
        text = str(raw).strip()
        try:
            numeric = int(text, 0)
        except ValueError:
            try:
                numeric = float(text)
            except ValueError as e:
                raise OracleError(f"Failed to parse decrypted KPI value ({raw!r})") from e
    if isinstance(numeric, float) and math.isnan(numeric):
        raise OracleError(f"Failed to parse decrypted KPI value ({raw!r})")
    return numeric


def unscale_value(raw: Any) -> float:
    """Relayer integer -> decimal KPI value (raw / VALUE_SCALE). Raises OracleError."""
    return float(parse_raw_value(raw)) / VALUE_SCALE


class DecryptionOracle(ABC):
    """Capability interface consumed by the orchestrator."""

    enabled: bool = True

    @abstractmethod
    async def decrypt(
        self,
        owner: str,
        metric_id_hex: str,
        entry_index: int,
        entries: list[RawMetricEntry],
    ) -> DecryptedValue:
        """Decrypt entries[entry_index] for owner/metric."""

    async def aclose(self) -> None:
        return None


class DisabledDecryptionOracle(DecryptionOracle):
    enabled = False

    async def decrypt(
        self,
        owner: str,
        metric_id_hex: str,
        entry_index: int,
        entries: list[RawMetricEntry],
    ) -> DecryptedValue:
        raise OracleDisabled("Node-side decryption disabled (ENABLE_NODE_DECRYPT=false)")


@dataclass
class RelayerConfig:
    """Relayer endpoint, signing domain and retry policy for user decryption."""

    relayer_url: str
    contract_address: str
    chain_id: int
    gateway_chain_id: int
    verifying_contract: str
    duration_days: int = DEFAULT_DURATION_DAYS
    timeout_sec: float = DEFAULT_DECRYPT_TIMEOUT_SEC
    retries: int = DEFAULT_DECRYPT_RETRIES
    min_retry_delay_sec: float = 1.0
    max_retry_delay_sec: float = 30.0

    def __post_init__(self) -> None:
        if not self.relayer_url.strip():
            raise ValueError("relayer_url must be non-empty")
        self.relayer_url = self.relayer_url.rstrip("/")
        self.contract_address = to_checksum_address(self.contract_address)
        self.verifying_contract = to_checksum_address(self.verifying_contract)
        self.retries = max(1, int(self.retries))


def _parse_results(resp: httpx.Response) -> dict[str, Any]:
    """{"results": {handle: raw}} -> {lower-case handle: raw}. Raises OracleError."""
    try:
        data = resp.json()
    except ValueError as e:
        raise OracleError(f"Relayer returned invalid JSON: {e}") from e
    results = data.get("results") if isinstance(data, dict) else None
    if not isinstance(results, dict):
        raise OracleError("Relayer response missing results")
    return {str(k).lower(): v for k, v in results.items()}


def _generate_public_key() -> bytes:
    """Ephemeral X25519 public key bound into the signed request."""
    return X25519PrivateKey.generate().public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


class RelayerDecryptionOracle(DecryptionOracle):
    enabled = True

    def __init__(
        self,
        config: RelayerConfig,
        account: Any,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._account = account
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(config.timeout_sec))

    async def decrypt(
        self,
        owner: str,
        metric_id_hex: str,
        entry_index: int,
        entries: list[RawMetricEntry],
    ) -> DecryptedValue:
        if entry_index < 0 or entry_index >= len(entries):
            raise MissingCiphertext(f"Metric entry {entry_index} not found for owner {owner}")
        entry = entries[entry_index]
        value_handle = entry.value_handle
        if not value_handle:
            raise MissingCiphertext(
                f"Encrypted value handle missing (owner={owner}, metric={metric_id_hex}, entry={entry_index})"
            )
        note_handle = entry.note_handle

        public_key = _generate_public_key()
        start_timestamp = int(time.time())
        signature = self.sign_authorization(public_key, start_timestamp)

        handles = [value_handle] + ([note_handle] if note_handle else [])
        results = await self._user_decrypt(handles, public_key, signature, start_timestamp)

        numeric = parse_raw_value(results.get(value_handle))
        value = unscale_value(numeric)
        note = None
        if note_handle and results.get(note_handle) is not None:
            note = str(results[note_handle])
        logger.debug(
            "oracle_entry_decrypted",
            owner=owner,
            metric_id=metric_id_hex,
            entry_index=entry_index,
            has_note=note is not None,
        )
        return DecryptedValue(
            value=value,
            raw_value=numeric if isinstance(numeric, int) else None,
            note=note,
        )

    def typed_data(self, public_key: bytes, start_timestamp: int) -> dict[str, Any]:
        """EIP-712 UserDecryptRequestVerification message for this worker."""
        cfg = self._config
        return {
            "types": {
                "EIP712Domain": [
                    {"name": "name", "type": "string"},
                    {"name": "version", "type": "string"},
                    {"name": "chainId", "type": "uint256"},
                    {"name": "verifyingContract", "type": "address"},
                ],
                "UserDecryptRequestVerification": [
                    {"name": "publicKey", "type": "bytes"},
                    {"name": "contractAddresses", "type": "address[]"},
                    {"name": "startTimestamp", "type": "uint256"},
                    {"name": "durationDays", "type": "uint256"},
                ],
            },
            "primaryType": "UserDecryptRequestVerification",
            "domain": {
                "name": EIP712_DOMAIN_NAME,
                "version": EIP712_DOMAIN_VERSION,
                "chainId": cfg.gateway_chain_id,
                "verifyingContract": cfg.verifying_contract,
            },
            "message": {
                "publicKey": public_key,
                "contractAddresses": [cfg.contract_address],
                "startTimestamp": start_timestamp,
                "durationDays": cfg.duration_days,
            },
        }

    def sign_authorization(self, public_key: bytes, start_timestamp: int) -> str:
        """Worker signature over the typed data, hex without 0x (relayer format)."""
        signable = encode_typed_data(full_message=self.typed_data(public_key, start_timestamp))
        signed = self._account.sign_message(signable)
        sig = signed.signature.hex()
        return sig[2:] if sig.startswith("0x") else sig

    async def _user_decrypt(
        self,
        handles: list[str],
        public_key: bytes,
        signature: str,
        start_timestamp: int,
    ) -> dict[str, Any]:
        cfg = self._config
        body = {
            "handleContractPairs": [
                {"handle": h, "contractAddress": cfg.contract_address} for h in handles
            ],
            "requestValidity": {
                "startTimestamp": str(start_timestamp),
                "durationDays": str(cfg.duration_days),
            },
            "contractsChainId": str(cfg.chain_id),
            "contractAddresses": [cfg.contract_address],
            "userAddress": self._account.address,
            "signature": signature,
            "publicKey": public_key.hex(),
        }
        url = cfg.relayer_url + USER_DECRYPT_PATH
        delay = cfg.min_retry_delay_sec
        last_error: Exception | None = None

        for attempt in range(cfg.retries):
            try:
                resp = await self._client.post(url, json=body, timeout=cfg.timeout_sec)
                # 4xx is not retried; 5xx falls through to the retry path
                if 400 <= resp.status_code < 500:
                    raise OracleError(
                        f"Relayer rejected decrypt request ({resp.status_code}): {resp.text[:200]}"
                    )
                resp.raise_for_status()
                return _parse_results(resp)
            except httpx.HTTPError as e:
                last_error = e

            logger.warning(
                "oracle_decrypt_retry",
                attempt=attempt + 1,
                max_retries=cfg.retries,
                error=str(last_error) or type(last_error).__name__,
            )
            if attempt + 1 < cfg.retries:
                await asyncio.sleep(delay)
                delay = min(delay * 2, cfg.max_retry_delay_sec)

        if isinstance(last_error, httpx.TimeoutException):
            raise OracleTimeout(
                f"Relayer did not answer within {cfg.timeout_sec}s after {cfg.retries} attempts"
            ) from last_error
        raise OracleError(f"Relayer decrypt failed after {cfg.retries} attempts: {last_error}") from last_error

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
