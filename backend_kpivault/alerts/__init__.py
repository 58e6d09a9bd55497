"""
Alert engine: rule matching, condition evaluation and idempotent processing.

Matches MetricRecorded events to an owner's active rules, evaluates threshold
and percent-change conditions on decrypted values, and tracks which
(event, rule) pairs are in flight or done.
"""

from backend_kpivault.alerts.evaluator import build_trigger_payload, evaluate_rule
from backend_kpivault.alerts.gate import IdempotencyGate, KeyState
from backend_kpivault.alerts.matcher import match_rules
from backend_kpivault.alerts.models import (
    VALUE_SCALE,
    AlertRule,
    DecryptedValue,
    Evaluation,
    RuleCondition,
    RuleStatus,
    TriggerPayload,
)

__all__ = [
    "VALUE_SCALE",
    "AlertRule",
    "DecryptedValue",
    "Evaluation",
    "IdempotencyGate",
    "KeyState",
    "RuleCondition",
    "RuleStatus",
    "TriggerPayload",
    "build_trigger_payload",
    "evaluate_rule",
    "match_rules",
]
