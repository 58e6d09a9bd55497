"""
Idempotency gate for (owner, metric, entry, rule) processing keys.

Per key: UNSEEN -> IN_FLIGHT (try_claim) -> PROCESSED (mark_processed) or back
to UNSEEN (release). At most one caller holds a key in flight; processed keys
are never claimed again for the life of the process. One threading.Lock
guards both sets and is held only for the state transition itself, never
across I/O, so the gate is safe from threads and from asyncio tasks alike.

Keys live in memory only: a restart forgets them, and processed keys are not
evicted.
"""

from __future__ import annotations

import threading
from enum import Enum


class KeyState(str, Enum):
    UNSEEN = "unseen"
    IN_FLIGHT = "in_flight"
    PROCESSED = "processed"


class IdempotencyGate:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._processed: set[str] = set()

    def try_claim(self, key: str) -> bool:
        """Claim key for evaluation; False if it is in flight or already processed."""
        with self._lock:
            if key in self._in_flight or key in self._processed:
                return False
            self._in_flight.add(key)
            return True

    def mark_processed(self, key: str) -> None:
        """Terminal success: key is never claimable again."""
        with self._lock:
            self._in_flight.discard(key)
            self._processed.add(key)

    def release(self, key: str) -> None:
        """Give up the claim so a redelivered event can retry. No-op for processed keys."""
        with self._lock:
            self._in_flight.discard(key)

    def state(self, key: str) -> KeyState:
        with self._lock:
            if key in self._processed:
                return KeyState.PROCESSED
            if key in self._in_flight:
                return KeyState.IN_FLIGHT
            return KeyState.UNSEEN

    def stats(self) -> dict[str, int]:
        """Counts for heartbeat logging."""
        with self._lock:
            return {
                "in_flight_keys": len(self._in_flight),
                "processed_keys": len(self._processed),
            }
