"""
Core cross-cutting pieces: the error taxonomy shared by every layer.
"""

from backend_kpivault.core.exceptions import (
    AlertWorkerError,
    ConfigError,
    DecryptionError,
    DeliveryError,
    FetchError,
    LedgerAuthorizationError,
    LedgerError,
    MissingCiphertext,
    OracleDisabled,
    OracleError,
    OracleTimeout,
    RpcError,
)

__all__ = [
    "AlertWorkerError",
    "ConfigError",
    "DecryptionError",
    "DeliveryError",
    "FetchError",
    "LedgerAuthorizationError",
    "LedgerError",
    "MissingCiphertext",
    "OracleDisabled",
    "OracleError",
    "OracleTimeout",
    "RpcError",
]
