"""
Rule condition evaluation on decrypted metric values.

Pure functions, no I/O. Decision order (first match wins):

1. changePercent configured and a previous value is available:
   previous == 0 never triggers; otherwise
   delta% = (current - previous) / |previous| * 100 and the rule triggers when
   |delta%| >= |target|.
2. threshold is a finite number: direction below (current < threshold),
   equals (exact equality, no tolerance), anything else incl. above
   (current > threshold).
3. No usable condition: never triggers.
"""

from __future__ import annotations

from backend_kpivault.alerts.models import (
    AlertRule,
    Evaluation,
    RuleCondition,
    TriggerPayload,
)

NOT_TRIGGERED = Evaluation(triggered=False)


def change_percent(current: float, previous: float) -> float:
    """Signed percent change relative to |previous|; previous must be non-zero."""
    return (current - previous) / abs(previous) * 100


def evaluate_rule(
    condition: RuleCondition,
    current: float,
    previous: float | None = None,
) -> Evaluation:
    """Evaluate one rule condition; see module docstring for the decision order."""
    if condition.has_change_percent and previous is not None:
        if previous == 0:
            return NOT_TRIGGERED
        actual = change_percent(current, previous)
        if abs(actual) >= abs(condition.change_percent):
            return Evaluation(
                triggered=True,
                evidence={
                    "changePercentActual": actual,
                    "changePercentTarget": condition.change_percent,
                    "previousValue": previous,
                },
            )
        return NOT_TRIGGERED

    if not condition.has_threshold:
        return NOT_TRIGGERED

    threshold = condition.threshold
    direction = condition.direction
    if direction == "below":
        hit = current < threshold
    elif direction == "equals":
        hit = current == threshold
    else:
        hit = current > threshold
    if not hit:
        return NOT_TRIGGERED
    return Evaluation(triggered=True, evidence={"threshold": threshold, "direction": direction})


def build_trigger_payload(
    rule: AlertRule,
    metric_id_hex: str,
    evaluation: Evaluation,
    current: float,
    previous: float | None = None,
) -> TriggerPayload:
    """Trigger payload for a rule that evaluated to triggered."""
    condition = rule.condition
    return TriggerPayload(
        current_value=current,
        previous_value=previous,
        threshold=condition.threshold,
        direction=condition.direction_raw,
        change_percent_target=condition.change_percent,
        change_percent_actual=evaluation.evidence.get("changePercentActual"),
        metric_id_hex=metric_id_hex,
        rule_id=rule.id,
    )
