"""
Alert data model: rules from the rule store, parsed rule conditions,
decrypted values, evaluation results and trigger payloads.

AlertRule mirrors the rule store's JSON (camelCase on the wire, snake_case in
Python). Everything the pipeline derives from a rule is immutable.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Decrypted integers carry two implied decimal places: raw 12345 -> 123.45
VALUE_SCALE = 100

DEFAULT_DIRECTION = "above"


class RuleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DELETED = "deleted"


class AlertRule(BaseModel):
    """Owner-defined alert rule as returned by GET /alerts/{owner}."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1, description="Rule id (uuid)")
    owner: str = Field(..., description="Owner wallet address")
    metric_id: str = Field(..., alias="metricId", description="Plain metric id; hashed to match ledger events")
    name: str = Field("", description="Display name")
    rule_type: str = Field("threshold", alias="ruleType")
    config: dict[str, Any] = Field(default_factory=dict, description="direction / threshold / changePercent")
    commitment: str = Field("", description="Hash binding the rule parameters; written to the audit log")
    channels: list[str] = Field(default_factory=list)
    status: str = Field(RuleStatus.ACTIVE.value)
    last_triggered_at: str | None = Field(None, alias="lastTriggeredAt")

    @field_validator("id", "metric_id", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("config", mode="before")
    @classmethod
    def _config_default(cls, value: Any) -> Any:
        return value if value is not None else {}

    @field_validator("channels", mode="before")
    @classmethod
    def _channels_default(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE.value

    @property
    def condition(self) -> "RuleCondition":
        return RuleCondition.from_config(self.config)


def to_number(value: Any) -> float | None:
    """
    Numeric coercion for rule config values.

    Numbers and numeric strings are accepted; None, booleans, empty strings and
    anything non-numeric count as "not configured". NaN/inf are returned as-is
    so callers can apply their own finiteness check.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class RuleCondition:
    """Parsed rule config: threshold/direction and/or percent-change target."""

    direction: str = DEFAULT_DIRECTION
    """Lower-cased comparison direction: above | below | equals (anything else = above)."""
    direction_raw: str = DEFAULT_DIRECTION
    """Direction exactly as configured, echoed in the trigger payload."""
    threshold: float | None = None
    change_percent: float | None = None
    change_percent_configured: bool = False
    """True when the rule carries a changePercent key at all (drives previous-entry decryption)."""

    @property
    def has_threshold(self) -> bool:
        return self.threshold is not None and math.isfinite(self.threshold)

    @property
    def has_change_percent(self) -> bool:
        return self.change_percent is not None and math.isfinite(self.change_percent)

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> "RuleCondition":
        config = config or {}
        raw_direction = config.get("direction")
        direction_raw = raw_direction if isinstance(raw_direction, str) else DEFAULT_DIRECTION
        return cls(
            direction=direction_raw.lower(),
            direction_raw=direction_raw,
            threshold=to_number(config.get("threshold")),
            change_percent=to_number(config.get("changePercent")),
            change_percent_configured=config.get("changePercent") is not None,
        )


@dataclass(frozen=True)
class DecryptedValue:
    """Plaintext metric value (descaled by VALUE_SCALE) plus the optional note."""

    value: float
    raw_value: int | None = None
    note: str | None = None


@dataclass(frozen=True)
class Evaluation:
    triggered: bool
    evidence: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TriggerPayload:
    """Evidence sent to the notification backend for a triggered rule."""

    current_value: float
    metric_id_hex: str
    rule_id: str
    previous_value: float | None = None
    threshold: float | None = None
    direction: str | None = None
    change_percent_target: float | None = None
    change_percent_actual: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """camelCase JSON body; unset and non-finite numbers are omitted."""
        out: dict[str, Any] = {
            "currentValue": self.current_value,
            "previousValue": self.previous_value,
            "threshold": self.threshold,
            "direction": self.direction,
            "changePercentTarget": self.change_percent_target,
            "changePercentActual": self.change_percent_actual,
            "metricIdHex": self.metric_id_hex,
            "ruleId": self.rule_id,
        }
        return {
            k: v
            for k, v in out.items()
            if v is not None and not (isinstance(v, float) and not math.isfinite(v))
        }
