"""
Data models for ledger listener output and contract reads.

MetricEvent is the unit of work emitted by the listener to the orchestrator;
RawMetricEntry mirrors one getMetrics() tuple with opaque ciphertext handles.
"""

from dataclasses import dataclass
from typing import Any

from backend_kpivault.utils.ledger_utils import metric_id_to_hex, normalize_handle


@dataclass(frozen=True)
class MetricEvent:
    """
    One MetricRecorded(owner, metricId, timestamp, entryIndex) log.

    block_number / transaction_hash / log_index locate the log on the ledger
    and are used by the listener for de-duplication.
    """

    owner: str
    metric_id: int
    timestamp: int
    entry_index: int
    block_number: int | None = None
    transaction_hash: str | None = None
    log_index: int | None = None

    @property
    def metric_id_hex(self) -> str:
        return metric_id_to_hex(self.metric_id)

    @property
    def log_key(self) -> tuple[Any, ...]:
        """(txHash, logIndex), or (block, entryIndex, owner, metricId) when the node omits them."""
        if self.transaction_hash is None or self.log_index is None:
            return (self.block_number, self.entry_index, self.owner.lower(), self.metric_id)
        return (self.transaction_hash, self.log_index)


@dataclass(frozen=True)
class RawMetricEntry:
    """Encrypted metric entry as stored on the ledger (value/note are bytes32 handles)."""

    metric_id: int
    timestamp: int
    value: bytes
    note: bytes

    @property
    def value_handle(self) -> str | None:
        return normalize_handle(self.value)

    @property
    def note_handle(self) -> str | None:
        return normalize_handle(self.note)

    @classmethod
    def from_abi_tuple(cls, item: tuple[Any, ...]) -> "RawMetricEntry":
        """Build from a decoded (uint256, uint64, bytes32, bytes32) tuple."""
        metric_id, timestamp, value, note = item
        return cls(
            metric_id=int(metric_id),
            timestamp=int(timestamp),
            value=bytes(value),
            note=bytes(note),
        )
