"""
KpiManager contract ABI: MetricRecorded log decoding, getMetrics call
encoding/decoding, logAlertTriggered calldata, and revert-reason parsing.

Only the three members the worker needs are described; encoding is done with
eth_abi and selectors/topics are keccak hashes of the canonical signatures.
"""

from __future__ import annotations

from typing import Any

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import decode_hex, encode_hex, function_signature_to_4byte_selector, keccak, to_checksum_address

from backend_kpivault.ledger.models import MetricEvent, RawMetricEntry

METRIC_RECORDED_SIGNATURE = "MetricRecorded(address,uint256,uint64,uint256)"
METRIC_RECORDED_TOPIC = encode_hex(keccak(text=METRIC_RECORDED_SIGNATURE))

GET_METRICS_SIGNATURE = "getMetrics(address,uint256)"
GET_METRICS_SELECTOR = function_signature_to_4byte_selector(GET_METRICS_SIGNATURE)
GET_METRICS_RETURN_TYPES = ["(uint256,uint64,bytes32,bytes32)[]"]

LOG_ALERT_TRIGGERED_SIGNATURE = "logAlertTriggered(address,uint256,uint256,bytes32,uint64)"
LOG_ALERT_TRIGGERED_SELECTOR = function_signature_to_4byte_selector(LOG_ALERT_TRIGGERED_SIGNATURE)

# Error(string) selector used by require()/revert("...")
ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")

NOT_AUTHORIZED_TO_LOG = "not authorized to log"


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 16)


def decode_metric_recorded(log: dict[str, Any]) -> MetricEvent:
    """
    Decode one eth_getLogs entry for MetricRecorded.

    topics: [event topic, owner (indexed), metricId (indexed)]; data: (uint64 timestamp, uint256 entryIndex).
    Raises ValueError for logs that are not MetricRecorded, DecodingError for bad data.
    """
    topics = log.get("topics") or []
    if len(topics) < 3 or str(topics[0]).lower() != METRIC_RECORDED_TOPIC.lower():
        raise ValueError("log is not a MetricRecorded event")
    owner_word = decode_hex(topics[1])
    if len(owner_word) != 32:
        raise ValueError("owner topic must be 32 bytes")
    owner = to_checksum_address(owner_word[-20:])
    metric_id = int.from_bytes(decode_hex(topics[2]), "big")
    timestamp, entry_index = decode(["uint64", "uint256"], decode_hex(log.get("data") or "0x"))
    block_number = log.get("blockNumber")
    log_index = log.get("logIndex")
    return MetricEvent(
        owner=owner,
        metric_id=metric_id,
        timestamp=int(timestamp),
        entry_index=int(entry_index),
        block_number=_to_int(block_number) if block_number is not None else None,
        transaction_hash=(log.get("transactionHash") or None),
        log_index=_to_int(log_index) if log_index is not None else None,
    )


def encode_get_metrics(owner: str, metric_id: int) -> str:
    """Calldata for getMetrics(owner, metricId)."""
    args = encode(["address", "uint256"], [to_checksum_address(owner), int(metric_id)])
    return encode_hex(GET_METRICS_SELECTOR + args)


def decode_get_metrics(result: str) -> list[RawMetricEntry]:
    """Decode the eth_call return data of getMetrics into RawMetricEntry rows."""
    data = decode_hex(result or "0x")
    if not data:
        return []
    (rows,) = decode(GET_METRICS_RETURN_TYPES, data)
    return [RawMetricEntry.from_abi_tuple(row) for row in rows]


def encode_log_alert_triggered(
    owner: str,
    metric_id: int,
    entry_index: int,
    commitment: bytes,
    timestamp: int,
) -> str:
    """Calldata for logAlertTriggered(owner, metricId, entryIndex, ruleCommitment, timestamp)."""
    if len(commitment) != 32:
        raise ValueError("rule commitment must be 32 bytes")
    args = encode(
        ["address", "uint256", "uint256", "bytes32", "uint64"],
        [to_checksum_address(owner), int(metric_id), int(entry_index), commitment, int(timestamp)],
    )
    return encode_hex(LOG_ALERT_TRIGGERED_SELECTOR + args)


def decode_revert_reason(data: Any) -> str | None:
    """Extract the Error(string) reason from JSON-RPC error data, if present."""
    if isinstance(data, dict):
        data = data.get("data")
    if not isinstance(data, str) or not data.startswith("0x"):
        return None
    try:
        raw = decode_hex(data)
    except ValueError:
        return None
    if raw[:4] != ERROR_STRING_SELECTOR:
        return None
    try:
        (reason,) = decode(["string"], raw[4:])
    except DecodingError:
        return None
    return reason
