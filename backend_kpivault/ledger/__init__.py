"""
KPI ledger access package.

Watches the KpiManager contract for MetricRecorded events (eth_getLogs
polling), reads encrypted metric entries, and writes best-effort audit
entries for triggered alerts.
"""

from backend_kpivault.ledger.audit import AuditLedgerClient
from backend_kpivault.ledger.contract import KpiManagerContract
from backend_kpivault.ledger.listener import MetricEventListener
from backend_kpivault.ledger.models import MetricEvent, RawMetricEntry
from backend_kpivault.ledger.rpc import JsonRpcClient

__all__ = [
    "AuditLedgerClient",
    "JsonRpcClient",
    "KpiManagerContract",
    "MetricEvent",
    "MetricEventListener",
    "RawMetricEntry",
]
