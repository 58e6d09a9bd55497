"""
Alert orchestration: MetricRecorded event -> rules -> decrypt -> evaluate -> audit + deliver.

Per event:
  1. normalise owner, render metric id as 32-byte hex
  2. fetch the owner's rules (failure drops the event)
  3. keep active rules whose hashed metric id matches (none: drop)
  4. decryption capability off: listener-only, drop
  5. read the owner's encrypted entries once (failure drops the event)
  6. per rule, in order: claim the processing key or skip it
  7. decrypt current entry (cached for the event), previous one only for percent-change rules
  8. evaluate; not triggered releases the key
  9. triggered: audit log (best-effort), then delivery; success marks the key
     processed, failure releases it for a future redelivery

Failures are contained: a rule failure never affects sibling rules, an event
failure never escapes handle_metric_recorded(). A heartbeat runs on its own
timer so slow external calls never silence it.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from backend_kpivault.alerts.evaluator import build_trigger_payload, evaluate_rule
from backend_kpivault.alerts.gate import IdempotencyGate
from backend_kpivault.alerts.matcher import match_rules
from backend_kpivault.alerts.models import AlertRule, DecryptedValue
from backend_kpivault.core.exceptions import DecryptionError, DeliveryError, FetchError
from backend_kpivault.kpivault_logging import bind_owner, get_logger
from backend_kpivault.ledger.models import MetricEvent, RawMetricEntry
from backend_kpivault.oracle.decryption import DecryptionOracle
from backend_kpivault.utils.ledger_utils import normalize_address, processing_key

logger = get_logger(__name__)

DEFAULT_HEARTBEAT_INTERVAL_SEC = 30.0


class RuleOutcome(str, Enum):
    SKIPPED = "skipped"
    NOT_TRIGGERED = "not_triggered"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"
    FAILED = "failed"


@dataclass
class WorkerState:
    """Counters for heartbeat and monitoring."""

    events_received: int = 0
    events_dropped: int = 0
    rules_evaluated: int = 0
    rules_skipped: int = 0
    triggers_delivered: int = 0
    delivery_failures: int = 0
    rule_failures: int = 0
    last_event_at: float | None = None
    last_error: str | None = None


class _EventDecryptCache:
    """Decrypted entries for one event; successes only, so a failed entry is retried per rule."""

    def __init__(
        self,
        oracle: DecryptionOracle,
        owner: str,
        metric_id_hex: str,
        entries: list[RawMetricEntry],
    ) -> None:
        self._oracle = oracle
        self._owner = owner
        self._metric_id_hex = metric_id_hex
        self._entries = entries
        self._values: dict[int, DecryptedValue] = {}

    async def get(self, entry_index: int) -> DecryptedValue:
        cached = self._values.get(entry_index)
        if cached is not None:
            return cached
        value = await self._oracle.decrypt(
            self._owner, self._metric_id_hex, entry_index, self._entries
        )
        self._values[entry_index] = value
        return value


class AlertOrchestrator:
    def __init__(
        self,
        rule_store: Any,
        ledger: Any,
        oracle: DecryptionOracle,
        audit: Any,
        delivery: Any,
        gate: IdempotencyGate,
        *,
        state: WorkerState | None = None,
    ) -> None:
        """
        Args:
            rule_store: object with async fetch_rules(owner) -> list[AlertRule].
            ledger: object with async get_entries(owner, metric_id) -> list[RawMetricEntry].
            oracle: decryption capability (disabled or relayer-backed).
            audit: object with async log_trigger(owner, metric_id, entry_index, commitment).
            delivery: object with async post_trigger(rule, metric_id_hex, entry_index, payload).
            gate: idempotency gate owned by the caller (one per process).
        """
        self._rule_store = rule_store
        self._ledger = ledger
        self._oracle = oracle
        self._audit = audit
        self._delivery = delivery
        self._gate = gate
        self.state = state or WorkerState()

    async def handle_metric_recorded(self, event: MetricEvent) -> list[RuleOutcome]:
        """Process one event end to end. Never raises; returns per-rule outcomes."""
        self.state.events_received += 1
        self.state.last_event_at = time.time()
        try:
            return await self._handle(event)
        except Exception as e:
            self.state.last_error = str(e)
            logger.exception(
                "alert_event_failed",
                owner=event.owner,
                entry_index=event.entry_index,
                error=str(e),
            )
            return []

    def _drop(self, log: Any, reason: str, **fields: Any) -> list[RuleOutcome]:
        self.state.events_dropped += 1
        log.info("alert_event_dropped", reason=reason, **fields)
        return []

    async def _handle(self, event: MetricEvent) -> list[RuleOutcome]:
        owner = normalize_address(event.owner)
        metric_id_hex = event.metric_id_hex
        log = bind_owner(
            owner, __name__, metric_id=metric_id_hex, entry_index=event.entry_index
        )
        log.info("alert_event_received")

        try:
            rules = await self._rule_store.fetch_rules(owner)
        except FetchError as e:
            self.state.last_error = str(e)
            log.error("alert_rules_fetch_failed", error=str(e))
            return self._drop(log, "rules_fetch_failed")
        if not rules:
            return self._drop(log, "no_rules")

        matching = match_rules(metric_id_hex, rules)
        if not matching:
            return self._drop(log, "no_matching_rules", rule_count=len(rules))

        if not self._oracle.enabled:
            return self._drop(
                log,
                "listener_only",
                matching_rules=len(matching),
                detail="decryption disabled; worker is running in listener-only mode",
            )

        try:
            entries = await self._ledger.get_entries(event.owner, event.metric_id)
        except FetchError as e:
            self.state.last_error = str(e)
            log.error("alert_entries_fetch_failed", error=str(e))
            return self._drop(log, "entries_fetch_failed")

        cache = _EventDecryptCache(self._oracle, owner, metric_id_hex, entries)
        outcomes: list[RuleOutcome] = []
        for rule in matching:
            rule_log = log.bind(rule_id=rule.id)
            outcomes.append(await self._process_rule_safe(event, owner, rule, cache, rule_log))
        return outcomes

    async def _process_rule_safe(
        self,
        event: MetricEvent,
        owner: str,
        rule: AlertRule,
        cache: _EventDecryptCache,
        log: Any,
    ) -> RuleOutcome:
        try:
            return await self._process_rule(event, owner, rule, cache, log)
        except Exception as e:
            self.state.rule_failures += 1
            self.state.last_error = str(e)
            log.exception("alert_rule_failed", error=str(e))
            return RuleOutcome.FAILED

    async def _process_rule(
        self,
        event: MetricEvent,
        owner: str,
        rule: AlertRule,
        cache: _EventDecryptCache,
        log: Any,
    ) -> RuleOutcome:
        metric_id_hex = event.metric_id_hex
        key = processing_key(owner, metric_id_hex, event.entry_index, rule.id)
        if not self._gate.try_claim(key):
            self.state.rules_skipped += 1
            log.info("alert_rule_skipped", reason="already_claimed")
            return RuleOutcome.SKIPPED

        processed = False
        try:
            try:
                current = await cache.get(event.entry_index)
            except DecryptionError as e:
                self.state.rule_failures += 1
                self.state.last_error = str(e)
                log.error(
                    "alert_rule_decrypt_failed",
                    error_type=type(e).__name__,
                    error=str(e),
                )
                return RuleOutcome.FAILED

            condition = rule.condition
            previous: float | None = None
            if condition.change_percent_configured and event.entry_index > 0:
                try:
                    previous = (await cache.get(event.entry_index - 1)).value
                except DecryptionError as e:
                    log.warning(
                        "alert_previous_decrypt_failed",
                        error_type=type(e).__name__,
                        error=str(e),
                    )

            self.state.rules_evaluated += 1
            evaluation = evaluate_rule(condition, current.value, previous)
            if not evaluation.triggered:
                log.info("alert_rule_not_triggered")
                return RuleOutcome.NOT_TRIGGERED

            payload = build_trigger_payload(
                rule, metric_id_hex, evaluation, current.value, previous
            )
            try:
                await self._audit.log_trigger(
                    event.owner, event.metric_id, event.entry_index, rule.commitment
                )
            except Exception as e:
                log.error("audit_log_failed", error=str(e))

            try:
                await self._delivery.post_trigger(
                    rule, metric_id_hex, event.entry_index, payload
                )
            except DeliveryError as e:
                self.state.delivery_failures += 1
                self.state.last_error = str(e)
                log.error(
                    "alert_delivery_failed",
                    status_code=e.status_code,
                    error=str(e),
                )
                return RuleOutcome.DELIVERY_FAILED

            self._gate.mark_processed(key)
            processed = True
            self.state.triggers_delivered += 1
            log.info(
                "alert_triggered",
                rule_name=rule.name,
                rule_metric=rule.metric_id,
                evidence=evaluation.evidence,
            )
            return RuleOutcome.DELIVERED
        finally:
            if not processed:
                self._gate.release(key)

    def log_heartbeat(self) -> None:
        s = self.state
        logger.info(
            "worker_heartbeat",
            message="still listening for MetricRecorded events",
            events_received=s.events_received,
            events_dropped=s.events_dropped,
            rules_evaluated=s.rules_evaluated,
            triggers_delivered=s.triggers_delivered,
            delivery_failures=s.delivery_failures,
            last_event_at=s.last_event_at,
            last_error=s.last_error,
            decryption_enabled=self._oracle.enabled,
            **self._gate.stats(),
        )

    async def run_heartbeat(
        self,
        stop_event: asyncio.Event,
        interval_sec: float = DEFAULT_HEARTBEAT_INTERVAL_SEC,
    ) -> None:
        """Log a heartbeat every interval_sec until stop_event is set."""
        interval = max(0.01, interval_sec)
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                self.log_heartbeat()
