"""
Application-level exceptions for the alert worker.

One hierarchy rooted at AlertWorkerError so the orchestrator can contain
failures at the smallest scope: event-level (FetchError), rule-level
(DecryptionError, DeliveryError) or best-effort side effects (LedgerError).
ConfigError is the only error that is allowed to stop the process.
"""

from __future__ import annotations

from typing import Any


class AlertWorkerError(Exception):
    """Base class for all alert worker errors."""


class ConfigError(AlertWorkerError):
    """Required configuration is missing or invalid; the worker refuses to start."""

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


class FetchError(AlertWorkerError):
    """Rule store or ledger entry read failed (unreachable, non-2xx, malformed)."""


class DecryptionError(AlertWorkerError):
    """Base for decryption oracle failures."""


class OracleDisabled(DecryptionError):
    """Decryption capability is switched off; the worker is listener-only."""


class MissingCiphertext(DecryptionError):
    """The metric entry has no encrypted value handle (or does not exist)."""


class OracleTimeout(DecryptionError):
    """The relayer did not answer within the timeout after all retries."""


class OracleError(DecryptionError):
    """The relayer answered with an error or an unusable result."""


class LedgerError(AlertWorkerError):
    """Ledger write or receipt failure."""


class RpcError(LedgerError):
    """JSON-RPC error object returned by the ledger node."""

    def __init__(self, message: str, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class LedgerAuthorizationError(LedgerError):
    """The worker is not (yet) allowed to write audit entries."""


class DeliveryError(AlertWorkerError):
    """Trigger POST to the notification backend failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
