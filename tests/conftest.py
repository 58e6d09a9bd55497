"""
Pytest fixtures for KPI vault alert worker tests. No network: HTTP goes through
httpx.MockTransport and ledger RPC through in-memory fakes.
"""

from __future__ import annotations

from typing import Any

import pytest

from backend_kpivault.alerts.gate import IdempotencyGate
from backend_kpivault.alerts.models import AlertRule
from backend_kpivault.utils.ledger_utils import encode_metric_id

# Well-known throwaway key (never funded)
TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
OWNER = "0x90F8bf6A479f320ead074411a4B0e7944Ea8c9C1"
CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
METRIC = "revenue"
METRIC_HEX = encode_metric_id(METRIC)
COMMITMENT = "0x" + "ab" * 32

WORKER_ENV_VARS = (
    "SEPOLIA_RPC_URL",
    "LEDGER_RPC_URL",
    "KPI_CONTRACT_ADDRESS",
    "BACKEND_URL",
    "ALERT_WORKER_PRIVATE_KEY",
    "ALERT_WORKER_KEY",
    "RELAYER_URL",
    "ENABLE_NODE_DECRYPT",
    "START_BLOCK",
    "CHAIN_ID",
    "HEARTBEAT_INTERVAL_SEC",
    "POLL_INTERVAL_SEC",
)


def make_rule(rule_id: str = "rule-1", metric_id: str = METRIC, **overrides: Any) -> AlertRule:
    data: dict[str, Any] = {
        "id": rule_id,
        "owner": OWNER.lower(),
        "metricId": metric_id,
        "name": f"Rule {rule_id}",
        "ruleType": "threshold",
        "config": {"direction": "above", "threshold": 100},
        "commitment": COMMITMENT,
        "channels": ["email"],
        "status": "active",
    }
    data.update(overrides)
    return AlertRule.model_validate(data)


@pytest.fixture
def gate() -> IdempotencyGate:
    """Fresh gate per test."""
    return IdempotencyGate()


@pytest.fixture
def account():
    from eth_account import Account

    return Account.from_key(TEST_PRIVATE_KEY)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every worker variable so tests start from an empty configuration."""
    for name in WORKER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def worker_env(clean_env):
    """Complete, valid worker environment (decryption disabled)."""
    clean_env.setenv("SEPOLIA_RPC_URL", "https://sepolia.example/v3/secret-key")
    clean_env.setenv("KPI_CONTRACT_ADDRESS", CONTRACT)
    clean_env.setenv("BACKEND_URL", "https://backend.example/")
    clean_env.setenv("ALERT_WORKER_PRIVATE_KEY", TEST_PRIVATE_KEY)
    clean_env.setenv("ALERT_WORKER_KEY", "shared-secret")
    return clean_env
