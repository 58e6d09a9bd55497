"""
Decryption oracle package: capability-gated access to encrypted KPI values.
"""

from backend_kpivault.oracle.decryption import (
    DecryptionOracle,
    DisabledDecryptionOracle,
    RelayerConfig,
    RelayerDecryptionOracle,
    unscale_value,
)

__all__ = [
    "DecryptionOracle",
    "DisabledDecryptionOracle",
    "RelayerConfig",
    "RelayerDecryptionOracle",
    "unscale_value",
]
