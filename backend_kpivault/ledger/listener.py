"""
MetricRecorded listener: eth_getLogs polling and event emission.

Responsibilities:
- Poll the ledger node for MetricRecorded logs of the KpiManager contract.
- Decode logs into MetricEvent and de-duplicate by (transactionHash, logIndex).
- Emit events via an async callback; the callback decides how to process them.
- Retry with exponential backoff and stop cleanly when the stop event is set.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable

import httpx
from eth_abi.exceptions import DecodingError

from backend_kpivault.core.exceptions import RpcError
from backend_kpivault.kpivault_logging import get_logger
from backend_kpivault.ledger.abi import METRIC_RECORDED_TOPIC, decode_metric_recorded
from backend_kpivault.ledger.models import MetricEvent
from backend_kpivault.ledger.rpc import JsonRpcClient

logger = get_logger(__name__)

EventCallback = Callable[[MetricEvent], Awaitable[None]]


class MetricEventListener:
    """
    Polling-based listener for MetricRecorded events.

    Each cycle reads the chain head and scans [next_block, head] in ranges of at
    most max_block_range. The cursor only advances past a range once its logs
    were fetched, so an RPC outage delays events instead of losing them.
    """

    def __init__(
        self,
        rpc: JsonRpcClient,
        contract_address: str,
        on_event: EventCallback,
        *,
        poll_interval_sec: float = 4.0,
        start_block: int | None = None,
        max_block_range: int = 2000,
        min_retry_delay_sec: float = 1.0,
        max_retry_delay_sec: float = 30.0,
        max_retries_per_poll: int = 5,
        max_seen_logs: int = 10_000,
    ) -> None:
        """
        Args:
            rpc: JSON-RPC client for the ledger node.
            contract_address: KpiManager address whose logs are watched.
            on_event: Async callback invoked once per new MetricEvent, in ledger order.
            poll_interval_sec: Seconds between poll cycles.
            start_block: First block to scan; None starts after the current head.
            max_block_range: Max blocks per eth_getLogs request.
            min_retry_delay_sec: Initial delay for exponential backoff on RPC errors.
            max_retry_delay_sec: Cap for backoff delay.
            max_retries_per_poll: Max attempts per RPC call within one cycle.
            max_seen_logs: Max log keys remembered for de-duplication.
        """
        if not contract_address.strip():
            raise ValueError("contract_address must be non-empty")
        if poll_interval_sec <= 0:
            raise ValueError("poll_interval_sec must be positive")
        if max_block_range < 1:
            raise ValueError("max_block_range must be at least 1")

        self._rpc = rpc
        self._address = contract_address
        self._on_event = on_event
        self._poll_interval_sec = poll_interval_sec
        self._next_block = start_block
        self._max_block_range = max_block_range
        self._min_retry_delay = min_retry_delay_sec
        self._max_retry_delay = max_retry_delay_sec
        self._max_retries_per_poll = max(1, max_retries_per_poll)
        self._max_seen = max_seen_logs

        # set for O(1) dedup + deque for FIFO eviction when over capacity
        self._seen: set[tuple[Any, ...]] = set()
        self._seen_order: deque[tuple[Any, ...]] = deque()
        self._stop_event = asyncio.Event()

    @property
    def next_block(self) -> int | None:
        return self._next_block

    def stop(self) -> None:
        """Request shutdown; the poll loop exits after the current cycle."""
        self._stop_event.set()

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Poll until stop() is called or the given stop_event is set."""
        if stop_event is not None:
            self._stop_event = stop_event
        logger.info(
            "listener_started",
            contract=self._address,
            poll_interval_sec=self._poll_interval_sec,
            start_block=self._next_block,
        )
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("listener_poll_cycle_error", error=str(e))
            if self._stop_event.is_set():
                break
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._poll_interval_sec
                )
            except asyncio.TimeoutError:
                pass
        logger.info("listener_poll_loop_exited", next_block=self._next_block)

    async def poll_once(self) -> int:
        """Scan new blocks once; return the number of events dispatched."""
        head = await self._with_retry("eth_blockNumber", self._rpc.block_number)
        if head is None:
            return 0
        if self._next_block is None:
            self._next_block = head + 1
            return 0

        dispatched = 0
        while self._next_block <= head and not self._stop_event.is_set():
            from_block = self._next_block
            to_block = min(head, from_block + self._max_block_range - 1)
            logs = await self._with_retry(
                "eth_getLogs", lambda: self._get_logs(from_block, to_block)
            )
            if logs is None:
                return dispatched
            events = self._new_events(logs)
            if events:
                logger.info(
                    "listener_new_events",
                    from_block=from_block,
                    to_block=to_block,
                    event_count=len(events),
                )
            for event in events:
                await self._dispatch(event)
                dispatched += 1
            self._next_block = to_block + 1
        return dispatched

    async def _get_logs(self, from_block: int, to_block: int) -> list[dict[str, Any]]:
        result = await self._rpc.call(
            "eth_getLogs",
            [
                {
                    "address": self._address,
                    "topics": [METRIC_RECORDED_TOPIC],
                    "fromBlock": hex(from_block),
                    "toBlock": hex(to_block),
                }
            ],
        )
        return result if isinstance(result, list) else []

    async def _with_retry(self, label: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run fn with exponential backoff; None after max_retries_per_poll failures."""
        delay = self._min_retry_delay
        for attempt in range(self._max_retries_per_poll):
            try:
                return await fn()
            except (RpcError, httpx.HTTPError, ValueError) as e:
                logger.warning(
                    "listener_rpc_retry",
                    method=label,
                    attempt=attempt + 1,
                    max_retries=self._max_retries_per_poll,
                    error=str(e),
                )
                if attempt + 1 >= self._max_retries_per_poll:
                    logger.error(
                        "listener_rpc_give_up",
                        method=label,
                        max_retries=self._max_retries_per_poll,
                        error=str(e),
                    )
                    return None
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._max_retry_delay)
        return None

    def _new_events(self, logs: list[dict[str, Any]]) -> list[MetricEvent]:
        events: list[MetricEvent] = []
        for item in logs:
            if not isinstance(item, dict) or item.get("removed"):
                continue
            try:
                event = decode_metric_recorded(item)
            except (ValueError, DecodingError) as e:
                logger.debug("listener_skip_invalid_log", error=str(e))
                continue
            if event.log_key in self._seen:
                continue
            self._mark_seen(event.log_key)
            events.append(event)
        events.sort(key=lambda ev: (ev.block_number or 0, ev.log_index or 0))
        return events

    def _mark_seen(self, key: tuple[Any, ...]) -> None:
        """Remember a log key; evict oldest if over capacity."""
        if len(self._seen) >= self._max_seen:
            oldest = self._seen_order.popleft()
            self._seen.discard(oldest)
        self._seen.add(key)
        self._seen_order.append(key)

    async def _dispatch(self, event: MetricEvent) -> None:
        try:
            await self._on_event(event)
        except Exception as e:
            logger.exception(
                "listener_callback_failed",
                owner=event.owner,
                entry_index=event.entry_index,
                error=str(e),
            )
