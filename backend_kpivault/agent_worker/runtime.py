"""
Alert worker process: listener + orchestrator + heartbeat on one asyncio loop.

Each MetricRecorded event is handled in its own task so a slow decryption or
backend call never blocks the listener or the heartbeat. SIGINT/SIGTERM set a
stop event; in-flight event tasks get SHUTDOWN_GRACE_SEC to finish before they
are cancelled.

Usage: python -m backend_kpivault.agent_worker.runtime
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Any

import httpx

from backend_kpivault.agent_worker.worker import AlertOrchestrator, WorkerState
from backend_kpivault.alerts.gate import IdempotencyGate
from backend_kpivault.backend_client import DeliveryClient, RuleStoreClient
from backend_kpivault.config.env import mask_url
from backend_kpivault.config.settings import WorkerSettings, get_settings
from backend_kpivault.core.exceptions import ConfigError
from backend_kpivault.kpivault_logging import get_logger
from backend_kpivault.ledger import (
    AuditLedgerClient,
    JsonRpcClient,
    KpiManagerContract,
    MetricEvent,
    MetricEventListener,
)
from backend_kpivault.oracle import (
    DecryptionOracle,
    DisabledDecryptionOracle,
    RelayerConfig,
    RelayerDecryptionOracle,
)

logger = get_logger(__name__)


class AlertWorker:
    """Owns the long-lived clients and the set of in-flight event tasks."""

    def __init__(
        self,
        settings: WorkerSettings,
        listener_factory: Any,
        orchestrator: AlertOrchestrator,
        *,
        closers: list[Any] | None = None,
    ) -> None:
        self._settings = settings
        self.orchestrator = orchestrator
        self.listener: MetricEventListener = listener_factory(self.on_event)
        self._closers = closers or []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._stop_event: asyncio.Event | None = None

    @property
    def in_flight_tasks(self) -> int:
        return len(self._tasks)

    async def on_event(self, event: MetricEvent) -> None:
        """Listener callback: schedule the event and return immediately."""
        task = asyncio.create_task(self.orchestrator.handle_metric_recorded(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def request_stop(self) -> None:
        if self._stop_event is not None and not self._stop_event.is_set():
            logger.info("worker_shutdown_signal")
            self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Windows: no loop signal handlers
                try:
                    signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.request_stop))
                except (AttributeError, ValueError):
                    pass

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Run until stop_event is set (or a signal arrives), then drain and close."""
        self._stop_event = stop_event or asyncio.Event()
        self._install_signal_handlers()
        s = self._settings
        logger.info(
            "worker_started",
            rpc_url=mask_url(s.rpc_url),
            contract=s.contract_address,
            worker_address=s.worker_account().address,
            backend_url=s.backend_url,
            decryption_enabled=s.enable_decrypt,
            heartbeat_interval_sec=s.heartbeat_interval_sec,
            poll_interval_sec=s.poll_interval_sec,
        )
        heartbeat = asyncio.create_task(
            self.orchestrator.run_heartbeat(self._stop_event, s.heartbeat_interval_sec)
        )
        try:
            await self.listener.run(self._stop_event)
        finally:
            self._stop_event.set()
            await self._drain()
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            await self._close()
            state = self.orchestrator.state
            logger.info(
                "worker_stopped",
                events_received=state.events_received,
                triggers_delivered=state.triggers_delivered,
                delivery_failures=state.delivery_failures,
            )

    async def _drain(self) -> None:
        if not self._tasks:
            return
        pending = set(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=self._settings.shutdown_grace_sec)
        if still_running:
            logger.warning("worker_cancelling_tasks", task_count=len(still_running))
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

    async def _close(self) -> None:
        for closer in self._closers:
            try:
                await closer()
            except Exception as e:
                logger.warning("worker_close_failed", error=str(e))


def build_oracle(settings: WorkerSettings, account: Any) -> DecryptionOracle:
    if not settings.enable_decrypt:
        return DisabledDecryptionOracle()
    config = RelayerConfig(
        relayer_url=settings.relayer_url,
        contract_address=settings.contract_address,
        chain_id=settings.chain_id,
        gateway_chain_id=settings.gateway_chain_id,
        verifying_contract=settings.decryption_verifier,
        duration_days=settings.decrypt_duration_days,
        timeout_sec=settings.decrypt_timeout_sec,
        retries=settings.decrypt_retries,
    )
    return RelayerDecryptionOracle(config, account)


def build_worker(settings: WorkerSettings, *, gate: IdempotencyGate | None = None) -> AlertWorker:
    """Wire clients, oracle and orchestrator from validated settings."""
    account = settings.worker_account()
    http = httpx.AsyncClient(timeout=httpx.Timeout(settings.http_timeout_sec))
    rpc = JsonRpcClient(settings.rpc_url, client=http)
    oracle = build_oracle(settings, account)
    orchestrator = AlertOrchestrator(
        rule_store=RuleStoreClient(settings.backend_url, client=http),
        ledger=KpiManagerContract(rpc, settings.contract_address),
        oracle=oracle,
        audit=AuditLedgerClient(
            rpc,
            account,
            settings.contract_address,
            settings.chain_id,
            receipt_timeout_sec=settings.receipt_timeout_sec,
        ),
        delivery=DeliveryClient(
            settings.backend_url, settings.worker_key, account.address, client=http
        ),
        gate=gate or IdempotencyGate(),
        state=WorkerState(),
    )

    def listener_factory(on_event: Any) -> MetricEventListener:
        return MetricEventListener(
            rpc,
            settings.contract_address,
            on_event,
            poll_interval_sec=settings.poll_interval_sec,
            start_block=settings.start_block,
            max_block_range=settings.max_block_range,
        )

    return AlertWorker(
        settings,
        listener_factory,
        orchestrator,
        closers=[oracle.aclose, http.aclose],
    )


def main() -> int:
    """CLI entrypoint: load settings from env and run until SIGINT/SIGTERM."""
    try:
        settings = get_settings()
    except ConfigError as e:
        logger.error("worker_config_error", error=str(e), missing=e.missing)
        return 1
    try:
        asyncio.run(build_worker(settings).run())
        return 0
    except KeyboardInterrupt:
        logger.info("worker_shutdown_signal")
        return 0
    except Exception as e:
        logger.exception("worker_fatal", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
