"""
Backend KPI Vault: alert worker for encrypted KPI metrics.

Runs 24/7: watches the KPI ledger for MetricRecorded events, matches them
against per-owner alert rules, evaluates rule conditions on decrypted values,
writes a best-effort audit entry on the ledger and delivers the trigger to the
notification backend. Modular architecture with clear separation between
ledger access, decryption, rule evaluation, backend clients and the worker.
"""

__version__ = "0.1.0"
