"""Rule matching: which of an owner's rules apply to a MetricRecorded event."""

from __future__ import annotations

from typing import Iterable

from backend_kpivault.alerts.models import AlertRule
from backend_kpivault.utils.ledger_utils import encode_metric_id


def match_rules(encoded_metric_id: str, rules: Iterable[AlertRule]) -> list[AlertRule]:
    """
    Return active rules whose hashed metric id equals the event's metric id.

    encoded_metric_id is the event metric id as 32-byte lower-case hex. Order of
    the input is preserved; an empty result is a normal outcome.
    """
    target = encoded_metric_id.lower()
    if not target:
        return []
    return [
        rule
        for rule in rules
        if rule.is_active and encode_metric_id(rule.metric_id) == target
    ]
