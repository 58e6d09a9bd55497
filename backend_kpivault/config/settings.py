"""
Worker settings: one typed source of truth built from the environment.

WorkerSettings.from_env() reads every variable (after .env loading);
validate() refuses to start when a required value is missing and reports all
missing names at once. Defaults match the Sepolia deployment of the KPI
manager contract and the FHEVM gateway.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from backend_kpivault.config.env import (
    env_bool,
    env_float,
    env_int,
    env_str,
    load_worker_env,
)
from backend_kpivault.core.exceptions import ConfigError

DEFAULT_CHAIN_ID = 11155111
DEFAULT_GATEWAY_CHAIN_ID = 10901
# FHEVM Sepolia decryption verifier (EIP-712 verifyingContract for user decrypt)
DEFAULT_DECRYPTION_VERIFIER = "0x5D8BD78e2ea6bbE41f26dFe9fdaEAa349e077478"

DEFAULT_HEARTBEAT_INTERVAL_SEC = 30.0
DEFAULT_POLL_INTERVAL_SEC = 4.0
DEFAULT_MAX_BLOCK_RANGE = 2000
DEFAULT_HTTP_TIMEOUT_SEC = 15.0
DEFAULT_DECRYPT_TIMEOUT_SEC = 60.0
DEFAULT_DECRYPT_RETRIES = 5
DEFAULT_DECRYPT_DURATION_DAYS = 10
DEFAULT_RECEIPT_TIMEOUT_SEC = 120.0
DEFAULT_SHUTDOWN_GRACE_SEC = 10.0

# (attribute, env var) pairs that must be non-empty for the worker to start
_REQUIRED = (
    ("rpc_url", "SEPOLIA_RPC_URL"),
    ("contract_address", "KPI_CONTRACT_ADDRESS"),
    ("backend_url", "BACKEND_URL"),
    ("worker_private_key", "ALERT_WORKER_PRIVATE_KEY"),
    ("worker_key", "ALERT_WORKER_KEY"),
)


@dataclass
class WorkerSettings:
    """Configuration for the alert worker. Secrets are excluded from repr."""

    rpc_url: str
    contract_address: str
    backend_url: str
    worker_private_key: str = field(repr=False)
    worker_key: str = field(repr=False)
    relayer_url: str = ""
    enable_decrypt: bool = False
    chain_id: int = DEFAULT_CHAIN_ID
    gateway_chain_id: int = DEFAULT_GATEWAY_CHAIN_ID
    decryption_verifier: str = DEFAULT_DECRYPTION_VERIFIER
    heartbeat_interval_sec: float = DEFAULT_HEARTBEAT_INTERVAL_SEC
    poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC
    start_block: int | None = None
    max_block_range: int = DEFAULT_MAX_BLOCK_RANGE
    http_timeout_sec: float = DEFAULT_HTTP_TIMEOUT_SEC
    decrypt_timeout_sec: float = DEFAULT_DECRYPT_TIMEOUT_SEC
    decrypt_retries: int = DEFAULT_DECRYPT_RETRIES
    decrypt_duration_days: int = DEFAULT_DECRYPT_DURATION_DAYS
    receipt_timeout_sec: float = DEFAULT_RECEIPT_TIMEOUT_SEC
    shutdown_grace_sec: float = DEFAULT_SHUTDOWN_GRACE_SEC

    def __post_init__(self) -> None:
        self.backend_url = self.backend_url.rstrip("/")
        self.relayer_url = self.relayer_url.rstrip("/")
        self.heartbeat_interval_sec = max(1.0, float(self.heartbeat_interval_sec))
        self.poll_interval_sec = max(0.5, float(self.poll_interval_sec))
        self.max_block_range = max(1, int(self.max_block_range))
        self.decrypt_retries = max(1, int(self.decrypt_retries))
        self.decrypt_duration_days = max(1, int(self.decrypt_duration_days))

    @classmethod
    def from_env(cls) -> "WorkerSettings":
        """Build settings from environment (.env files loaded first). Does not validate."""
        load_worker_env()
        return cls(
            rpc_url=env_str("SEPOLIA_RPC_URL", "", "LEDGER_RPC_URL"),
            contract_address=env_str("KPI_CONTRACT_ADDRESS"),
            backend_url=env_str("BACKEND_URL"),
            worker_private_key=env_str("ALERT_WORKER_PRIVATE_KEY"),
            worker_key=env_str("ALERT_WORKER_KEY"),
            relayer_url=env_str("RELAYER_URL"),
            enable_decrypt=env_bool("ENABLE_NODE_DECRYPT", False),
            chain_id=env_int("CHAIN_ID", DEFAULT_CHAIN_ID),
            gateway_chain_id=env_int("GATEWAY_CHAIN_ID", DEFAULT_GATEWAY_CHAIN_ID),
            decryption_verifier=env_str("DECRYPTION_VERIFIER_ADDRESS", DEFAULT_DECRYPTION_VERIFIER),
            heartbeat_interval_sec=env_float("HEARTBEAT_INTERVAL_SEC", DEFAULT_HEARTBEAT_INTERVAL_SEC),
            poll_interval_sec=env_float("POLL_INTERVAL_SEC", DEFAULT_POLL_INTERVAL_SEC),
            start_block=env_int("START_BLOCK", None),
            max_block_range=env_int("MAX_BLOCK_RANGE", DEFAULT_MAX_BLOCK_RANGE),
            http_timeout_sec=env_float("HTTP_TIMEOUT_SEC", DEFAULT_HTTP_TIMEOUT_SEC),
            decrypt_timeout_sec=env_float("DECRYPT_TIMEOUT_SEC", DEFAULT_DECRYPT_TIMEOUT_SEC),
            decrypt_retries=env_int("DECRYPT_RETRIES", DEFAULT_DECRYPT_RETRIES),
            decrypt_duration_days=env_int("DECRYPT_DURATION_DAYS", DEFAULT_DECRYPT_DURATION_DAYS),
            receipt_timeout_sec=env_float("RECEIPT_TIMEOUT_SEC", DEFAULT_RECEIPT_TIMEOUT_SEC),
            shutdown_grace_sec=env_float("SHUTDOWN_GRACE_SEC", DEFAULT_SHUTDOWN_GRACE_SEC),
        )

    def validate(self) -> "WorkerSettings":
        """
        Raise ConfigError listing every missing required variable.

        RELAYER_URL is only required when decryption is enabled. The worker
        private key and contract address must also parse.
        """
        missing = [env for attr, env in _REQUIRED if not getattr(self, attr)]
        if self.enable_decrypt and not self.relayer_url:
            missing.append("RELAYER_URL")
        if missing:
            raise ConfigError(
                "Missing required environment variable(s): " + ", ".join(missing),
                missing=missing,
            )

        from eth_utils import is_address

        if not is_address(self.contract_address):
            raise ConfigError(f"KPI_CONTRACT_ADDRESS is not a valid address: {self.contract_address!r}")
        self.worker_account()
        return self

    def worker_account(self) -> Any:
        """Return the eth_account LocalAccount for the worker private key."""
        from eth_account import Account

        try:
            return Account.from_key(self.worker_private_key)
        except (ValueError, TypeError) as e:
            raise ConfigError("ALERT_WORKER_PRIVATE_KEY is not a valid private key") from e


def get_settings() -> WorkerSettings:
    """Return validated settings from the environment; raises ConfigError."""
    return WorkerSettings.from_env().validate()
