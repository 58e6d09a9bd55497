"""
Agent worker package: long-running alert orchestration.

Wires the MetricRecorded listener to the alert orchestrator, runs the
heartbeat, and coordinates graceful shutdown.
"""

from backend_kpivault.agent_worker.worker import AlertOrchestrator, RuleOutcome, WorkerState

__all__ = ["AlertOrchestrator", "RuleOutcome", "WorkerState"]
