"""
Tests for AlertOrchestrator.handle_metric_recorded: the event -> rules ->
decrypt -> evaluate -> audit -> delivery pipeline with in-memory collaborators.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from backend_kpivault.agent_worker.worker import AlertOrchestrator, RuleOutcome
from backend_kpivault.alerts.gate import KeyState
from backend_kpivault.alerts.models import DecryptedValue
from backend_kpivault.core.exceptions import (
    DeliveryError,
    FetchError,
    LedgerAuthorizationError,
    OracleError,
    RpcError,
)
from backend_kpivault.ledger.audit import AuditLedgerClient
from backend_kpivault.ledger.models import MetricEvent, RawMetricEntry
from backend_kpivault.oracle.decryption import DecryptionOracle, DisabledDecryptionOracle
from backend_kpivault.utils.ledger_utils import processing_key

from tests.conftest import COMMITMENT, CONTRACT, METRIC_HEX, OWNER, make_rule

METRIC_ID = int(METRIC_HEX, 16)
ENTRIES = [
    RawMetricEntry(metric_id=METRIC_ID, timestamp=100, value=b"\x01" * 32, note=b"\x00" * 32),
    RawMetricEntry(metric_id=METRIC_ID, timestamp=200, value=b"\x02" * 32, note=b"\x00" * 32),
]


def event(entry_index: int = 1) -> MetricEvent:
    return MetricEvent(
        owner=OWNER,
        metric_id=METRIC_ID,
        timestamp=200,
        entry_index=entry_index,
        block_number=10,
        transaction_hash="0x" + "aa" * 32,
        log_index=0,
    )


def key_for(rule_id: str, entry_index: int = 1) -> str:
    return processing_key(OWNER.lower(), METRIC_HEX, entry_index, rule_id)


class FakeRuleStore:
    def __init__(self, rules=None, error: Exception | None = None) -> None:
        self.rules = rules or []
        self.error = error
        self.owners: list[str] = []

    async def fetch_rules(self, owner: str):
        self.owners.append(owner)
        if self.error:
            raise self.error
        return self.rules


class FakeLedger:
    def __init__(self, entries=ENTRIES, error: Exception | None = None) -> None:
        self.entries = entries
        self.error = error
        self.calls = 0

    async def get_entries(self, owner: str, metric_id: int):
        self.calls += 1
        if self.error:
            raise self.error
        return self.entries


class FakeOracle(DecryptionOracle):
    """Plain values by entry index; an Exception value is raised."""

    def __init__(self, values: dict) -> None:
        self.values = values
        self.calls: list[int] = []

    async def decrypt(self, owner, metric_id_hex, entry_index, entries):
        self.calls.append(entry_index)
        value = self.values[entry_index]
        if isinstance(value, Exception):
            raise value
        return DecryptedValue(value=value)


def build(gate, *, rules, oracle=None, rule_store=None, ledger=None, audit=None, delivery=None):
    return AlertOrchestrator(
        rule_store=rule_store or FakeRuleStore(rules),
        ledger=ledger or FakeLedger(),
        oracle=oracle or FakeOracle({0: 100.0, 1: 150.0}),
        audit=audit or AsyncMock(),
        delivery=delivery or AsyncMock(),
        gate=gate,
    )


@pytest.mark.asyncio
async def test_threshold_trigger_audits_delivers_and_marks_processed(gate):
    rule = make_rule("r1")
    audit, delivery = AsyncMock(), AsyncMock()
    orch = build(gate, rules=[rule], audit=audit, delivery=delivery)

    outcomes = await orch.handle_metric_recorded(event())

    assert outcomes == [RuleOutcome.DELIVERED]
    audit.log_trigger.assert_awaited_once_with(OWNER, METRIC_ID, 1, COMMITMENT)
    delivery.post_trigger.assert_awaited_once()
    sent_rule, metric_hex, entry_index, payload = delivery.post_trigger.await_args.args
    assert sent_rule is rule
    assert metric_hex == METRIC_HEX
    assert entry_index == 1
    assert payload.to_dict()["currentValue"] == 150.0
    assert gate.state(key_for("r1")) == KeyState.PROCESSED
    assert orch.state.triggers_delivered == 1


@pytest.mark.asyncio
async def test_redelivered_event_is_skipped_after_success(gate):
    delivery = AsyncMock()
    orch = build(gate, rules=[make_rule("r1")], delivery=delivery)

    await orch.handle_metric_recorded(event())
    outcomes = await orch.handle_metric_recorded(event())

    assert outcomes == [RuleOutcome.SKIPPED]
    assert delivery.post_trigger.await_count == 1


@pytest.mark.asyncio
async def test_rules_are_fetched_for_lower_case_owner(gate):
    store = FakeRuleStore([make_rule("r1")])
    await build(gate, rules=None, rule_store=store).handle_metric_recorded(event())
    assert store.owners == [OWNER.lower()]


@pytest.mark.asyncio
async def test_listener_only_mode_never_evaluates_or_delivers(gate):
    ledger, delivery = FakeLedger(), AsyncMock()
    orch = build(
        gate,
        rules=[make_rule("r1"), make_rule("r2")],
        oracle=DisabledDecryptionOracle(),
        ledger=ledger,
        delivery=delivery,
    )

    assert await orch.handle_metric_recorded(event()) == []
    delivery.post_trigger.assert_not_awaited()
    assert ledger.calls == 0
    assert gate.stats() == {"in_flight_keys": 0, "processed_keys": 0}
    assert orch.state.events_dropped == 1


@pytest.mark.asyncio
async def test_authorization_error_from_audit_does_not_block_delivery(gate):
    delivery = AsyncMock()
    audit = AsyncMock()
    audit.log_trigger.side_effect = LedgerAuthorizationError("not authorized to log")
    orch = build(gate, rules=[make_rule("r1")], audit=audit, delivery=delivery)

    assert await orch.handle_metric_recorded(event()) == [RuleOutcome.DELIVERED]
    delivery.post_trigger.assert_awaited_once()


@pytest.mark.asyncio
async def test_real_audit_client_unauthorized_still_delivers(gate, account):
    class UnauthorizedRpc:
        async def call(self, method, params=None):
            raise RpcError("execution reverted: not authorized to log", code=3)

    audit = AuditLedgerClient(UnauthorizedRpc(), account, CONTRACT, 11155111)
    delivery = AsyncMock()
    orch = build(gate, rules=[make_rule("r1")], audit=audit, delivery=delivery)

    assert await orch.handle_metric_recorded(event()) == [RuleOutcome.DELIVERED]
    delivery.post_trigger.assert_awaited_once()


@pytest.mark.asyncio
async def test_delivery_failure_releases_key_for_retry(gate):
    delivery = AsyncMock()
    delivery.post_trigger.side_effect = DeliveryError("Backend trigger request failed (503)", status_code=503)
    orch = build(gate, rules=[make_rule("r1")], delivery=delivery)

    assert await orch.handle_metric_recorded(event()) == [RuleOutcome.DELIVERY_FAILED]
    assert gate.state(key_for("r1")) == KeyState.UNSEEN
    assert gate.try_claim(key_for("r1")) is True
    assert orch.state.delivery_failures == 1


@pytest.mark.asyncio
async def test_redelivery_after_failed_delivery_succeeds(gate):
    delivery = AsyncMock()
    delivery.post_trigger.side_effect = [DeliveryError("down", status_code=500), None]
    orch = build(gate, rules=[make_rule("r1")], delivery=delivery)

    assert await orch.handle_metric_recorded(event()) == [RuleOutcome.DELIVERY_FAILED]
    assert await orch.handle_metric_recorded(event()) == [RuleOutcome.DELIVERED]
    assert gate.state(key_for("r1")) == KeyState.PROCESSED


@pytest.mark.asyncio
async def test_claim_held_elsewhere_is_skipped_without_release(gate):
    gate.try_claim(key_for("r1"))
    delivery = AsyncMock()
    orch = build(gate, rules=[make_rule("r1")], delivery=delivery)

    assert await orch.handle_metric_recorded(event()) == [RuleOutcome.SKIPPED]
    assert gate.state(key_for("r1")) == KeyState.IN_FLIGHT
    delivery.post_trigger.assert_not_awaited()


@pytest.mark.asyncio
async def test_not_triggered_releases_key(gate):
    orch = build(gate, rules=[make_rule("r1", config={"threshold": 1000})])
    assert await orch.handle_metric_recorded(event()) == [RuleOutcome.NOT_TRIGGERED]
    assert gate.state(key_for("r1")) == KeyState.UNSEEN


@pytest.mark.asyncio
async def test_current_value_decrypted_once_per_event(gate):
    oracle = FakeOracle({0: 100.0, 1: 150.0})
    rules = [make_rule("r1"), make_rule("r2", config={"threshold": 10})]
    orch = build(gate, rules=rules, oracle=oracle)

    assert await orch.handle_metric_recorded(event()) == [RuleOutcome.DELIVERED, RuleOutcome.DELIVERED]
    assert oracle.calls == [1]


@pytest.mark.asyncio
async def test_change_percent_rule_uses_previous_entry(gate):
    oracle = FakeOracle({0: 100.0, 1: 115.0})
    delivery = AsyncMock()
    orch = build(gate, rules=[make_rule("p1", config={"changePercent": 10})], oracle=oracle, delivery=delivery)

    assert await orch.handle_metric_recorded(event()) == [RuleOutcome.DELIVERED]
    assert sorted(oracle.calls) == [0, 1]
    body = delivery.post_trigger.await_args.args[3].to_dict()
    assert body["previousValue"] == 100.0
    assert body["changePercentActual"] == pytest.approx(15)


@pytest.mark.asyncio
async def test_threshold_rule_does_not_decrypt_previous(gate):
    oracle = FakeOracle({0: 100.0, 1: 150.0})
    await build(gate, rules=[make_rule("r1")], oracle=oracle).handle_metric_recorded(event())
    assert oracle.calls == [1]


@pytest.mark.asyncio
async def test_first_entry_has_no_previous(gate):
    oracle = FakeOracle({0: 150.0})
    rule = make_rule("p1", config={"changePercent": 10, "threshold": 100})
    assert await build(gate, rules=[rule], oracle=oracle).handle_metric_recorded(event(0)) == [
        RuleOutcome.DELIVERED
    ]
    assert oracle.calls == [0]


@pytest.mark.asyncio
async def test_previous_decrypt_failure_falls_back_to_threshold(gate):
    oracle = FakeOracle({0: OracleError("relayer 500"), 1: 150.0})
    delivery = AsyncMock()
    rule = make_rule("p1", config={"changePercent": 10, "threshold": 100, "direction": "above"})
    orch = build(gate, rules=[rule], oracle=oracle, delivery=delivery)

    assert await orch.handle_metric_recorded(event()) == [RuleOutcome.DELIVERED]
    body = delivery.post_trigger.await_args.args[3].to_dict()
    assert "previousValue" not in body
    assert body["threshold"] == 100


@pytest.mark.asyncio
async def test_current_decrypt_failure_fails_rule_and_releases(gate):
    oracle = FakeOracle({1: OracleError("relayer 500")})
    delivery = AsyncMock()
    orch = build(gate, rules=[make_rule("r1")], oracle=oracle, delivery=delivery)

    assert await orch.handle_metric_recorded(event()) == [RuleOutcome.FAILED]
    delivery.post_trigger.assert_not_awaited()
    assert gate.state(key_for("r1")) == KeyState.UNSEEN


@pytest.mark.asyncio
async def test_rule_failure_does_not_affect_siblings(gate):
    delivery = AsyncMock()
    delivery.post_trigger.side_effect = [RuntimeError("unexpected"), None]
    orch = build(gate, rules=[make_rule("r1"), make_rule("r2")], delivery=delivery)

    assert await orch.handle_metric_recorded(event()) == [RuleOutcome.FAILED, RuleOutcome.DELIVERED]
    assert gate.state(key_for("r1")) == KeyState.UNSEEN
    assert gate.state(key_for("r2")) == KeyState.PROCESSED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "rule_store,ledger",
    [
        (FakeRuleStore(error=FetchError("backend down")), FakeLedger()),
        (FakeRuleStore([]), FakeLedger()),
        (FakeRuleStore([make_rule("r1", metric_id="churn")]), FakeLedger()),
        (FakeRuleStore([make_rule("r1")]), FakeLedger(error=FetchError("eth_call failed"))),
    ],
    ids=["rules_fetch_failed", "no_rules", "no_matching_rules", "entries_fetch_failed"],
)
async def test_event_is_dropped(gate, rule_store, ledger):
    delivery = AsyncMock()
    orch = build(gate, rules=None, rule_store=rule_store, ledger=ledger, delivery=delivery)

    assert await orch.handle_metric_recorded(event()) == []
    delivery.post_trigger.assert_not_awaited()
    assert orch.state.events_dropped == 1


@pytest.mark.asyncio
async def test_unexpected_event_error_never_escapes(gate):
    store = FakeRuleStore(error=RuntimeError("bug"))
    orch = build(gate, rules=None, rule_store=store)
    assert await orch.handle_metric_recorded(event()) == []
    assert orch.state.last_error == "bug"


@pytest.mark.asyncio
async def test_heartbeat_runs_until_stopped(gate):
    orch = build(gate, rules=[])
    orch.log_heartbeat = MagicMock()
    stop = asyncio.Event()

    task = asyncio.create_task(orch.run_heartbeat(stop, interval_sec=0.01))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert orch.log_heartbeat.call_count >= 1


class SlowOracle(FakeOracle):
    async def decrypt(self, owner, metric_id_hex, entry_index, entries):
        await asyncio.sleep(0.01)
        return await super().decrypt(owner, metric_id_hex, entry_index, entries)


@pytest.mark.asyncio
async def test_concurrent_copies_of_one_event_deliver_once(gate):
    delivery = AsyncMock()
    oracle = SlowOracle({0: 100.0, 1: 150.0})
    orch = build(gate, rules=[make_rule("r1")], oracle=oracle, delivery=delivery)

    results = await asyncio.gather(*(orch.handle_metric_recorded(event()) for _ in range(10)))

    outcomes = [outcome for per_event in results for outcome in per_event]
    assert outcomes.count(RuleOutcome.DELIVERED) == 1
    assert outcomes.count(RuleOutcome.SKIPPED) == 9
    delivery.post_trigger.assert_awaited_once()
    assert gate.state(key_for("r1")) == KeyState.PROCESSED


@pytest.mark.asyncio
async def test_heartbeat_keeps_ticking_while_delivery_hangs(gate):
    never = asyncio.Event()

    async def hang(*args):
        await never.wait()

    delivery = AsyncMock()
    delivery.post_trigger.side_effect = hang
    orch = build(gate, rules=[make_rule("r1")], delivery=delivery)
    orch.log_heartbeat = MagicMock()
    stop = asyncio.Event()

    handling = asyncio.create_task(orch.handle_metric_recorded(event()))
    heartbeat = asyncio.create_task(orch.run_heartbeat(stop, interval_sec=0.01))
    await asyncio.sleep(0.1)

    assert not handling.done()
    assert delivery.post_trigger.await_count == 1
    assert orch.log_heartbeat.call_count >= 3

    stop.set()
    await asyncio.wait_for(heartbeat, timeout=1)
    handling.cancel()
    await asyncio.gather(handling, return_exceptions=True)
