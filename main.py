"""
Main entrypoint: KPI vault alert worker (24/7).

Listens for MetricRecorded events, evaluates the owner's alert rules against
decrypted values, writes audit entries and delivers triggers to the backend.
Exits 1 on missing configuration; SIGINT/SIGTERM stop it cleanly (exit 0).

Env: SEPOLIA_RPC_URL, KPI_CONTRACT_ADDRESS, BACKEND_URL, ALERT_WORKER_PRIVATE_KEY,
ALERT_WORKER_KEY, ENABLE_NODE_DECRYPT, RELAYER_URL, HEARTBEAT_INTERVAL_SEC, etc.
"""

import sys

from backend_kpivault.agent_worker.runtime import main

if __name__ == "__main__":
    sys.exit(main())
