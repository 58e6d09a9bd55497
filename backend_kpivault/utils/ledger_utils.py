"""Address, metric-id and ciphertext-handle helpers shared by ledger and alert code."""

from __future__ import annotations

from eth_utils import keccak, to_checksum_address

ZERO_HANDLE = "0x" + "00" * 32


def normalize_address(address: str | None) -> str:
    """Lower-case 0x address; falls back to plain lower-casing when not a valid address."""
    if not address:
        return ""
    try:
        return to_checksum_address(address).lower()
    except (ValueError, TypeError):
        return str(address).lower()


def encode_metric_id(metric_id: str | int | None) -> str:
    """keccak256 of the metric id string as 32-byte lower-case hex ("" for empty ids)."""
    if metric_id is None or metric_id == "":
        return ""
    return "0x" + keccak(text=str(metric_id)).hex().lower()


def metric_id_to_hex(value: int) -> str:
    """On-chain uint256 metric id as 32-byte zero-padded lower-case hex."""
    return f"0x{int(value):064x}"


def normalize_handle(handle: bytes | str | None) -> str | None:
    """Return the 0x-hex ciphertext handle, or None for empty / zero handles."""
    if handle is None:
        return None
    if isinstance(handle, (bytes, bytearray)):
        value = "0x" + bytes(handle).hex()
    else:
        value = str(handle).strip().lower()
        if value and not value.startswith("0x"):
            value = "0x" + value
    if not value or value == "0x" or value == ZERO_HANDLE:
        return None
    try:
        if int(value, 16) == 0:
            return None
    except ValueError:
        return None
    return value


def processing_key(owner: str, metric_id_hex: str, entry_index: int, rule_id: str) -> str:
    """Deduplication key for one (event, rule) pairing: owner:metricIdHex:entryIndex:ruleId."""
    return f"{owner}:{metric_id_hex}:{entry_index}:{rule_id}"
