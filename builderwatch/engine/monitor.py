"""Chain event monitor — wires backfill, live stream and the event store.

The monitor is what a presentation layer talks to:
  - snapshot()          newest-first event feed
  - connection_state()  live stream status
  - scan_progress()     current backfill progress, or None
  - subscribe(cb)       store-changed notifications
  - status_text         human readable engine status

Tearing down with ``stop()`` lets the in-flight backfill batch return,
unsubscribes the live stream and cancels any pending reconnect.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Sequence

from builderwatch.config import BuilderWatchConfig
from builderwatch.connectors.logs_feed import LogsFeed
from builderwatch.connectors.solana_rpc import SolanaRPCClient
from builderwatch.engine.backfill import BackfillScanner, RunState
from builderwatch.engine.errors import ClassificationAnomaly
from builderwatch.engine.event_store import EventStore
from builderwatch.engine.live_listener import LiveStreamListener
from builderwatch.engine.models import (
    BackfillReport,
    ConnectionState,
    Event,
    ScanProgress,
    WatchTarget,
)
from builderwatch.engine.supervisor import ReconnectSupervisor
from builderwatch.observability.logger import get_logger

log = get_logger(__name__)

STATUS_INITIALIZING = "Initializing..."
STATUS_SCANNING = "Scanning history..."
STATUS_MONITORING = "Monitoring"
STATUS_BACKFILL_FAILED = "Monitoring (backfill failed)"
STATUS_STOPPED = "Stopped"


class ChainEventMonitor:
    """Session-scoped reconciler of historical and live chain events."""

    def __init__(
        self,
        config: BuilderWatchConfig | None = None,
        *,
        client: SolanaRPCClient | None = None,
        feed: LogsFeed | None = None,
        store: EventStore | None = None,
        targets: Sequence[WatchTarget] | None = None,
    ):
        self.config = config or BuilderWatchConfig()
        cfg = self.config
        self.targets = list(targets) if targets is not None else cfg.watch_targets()
        self.store = store if store is not None else EventStore()
        self.client = client or SolanaRPCClient(
            cfg.rpc,
            batch_size=cfg.backfill.batch_size,
            batch_delay_ms=cfg.backfill.batch_delay_ms,
        )
        self.feed = feed or LogsFeed(
            cfg.rpc.ws_url,
            api_key=cfg.rpc.api_key,
            api_key_mode=cfg.rpc.api_key_mode,
            ack_timeout_secs=cfg.stream.ack_timeout_secs,
        )
        self.scanner = BackfillScanner(
            self.client,
            self.store,
            self.targets,
            signature_limit=cfg.backfill.signature_limit,
            lookback_days=cfg.backfill.lookback_days,
        )
        self.listener = LiveStreamListener(
            self.feed,
            self.store,
            self.targets,
            commitment=cfg.rpc.stream_commitment,
        )
        self.supervisor = ReconnectSupervisor(
            self.listener,
            min_secs=cfg.stream.reconnect_min_secs,
            max_secs=cfg.stream.reconnect_max_secs,
        )
        self.status_text = STATUS_INITIALIZING
        self._backfill_task: asyncio.Task[BackfillReport | None] | None = None
        self._started = False
        self._stopped = False

    async def __aenter__(self) -> "ChainEventMonitor":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the live stream and kick off a backfill run."""
        if self._started:
            return
        self._started = True
        log.info("monitor.starting", targets=[t.label for t in self.targets])
        self.refresh()
        await self.listener.start()
        self.supervisor.start()

    def refresh(self) -> asyncio.Task[BackfillReport | None] | None:
        """Trigger a fresh backfill run. No-op while one is active."""
        if self._stopped:
            return None
        if self.scanner.is_running or (self._backfill_task and not self._backfill_task.done()):
            log.debug("monitor.refresh_ignored")
            return None
        self._backfill_task = asyncio.create_task(self._run_backfill())
        return self._backfill_task

    async def _run_backfill(self) -> BackfillReport | None:
        self.status_text = STATUS_SCANNING
        try:
            report = await self.scanner.run()
        except Exception as e:
            log.error("monitor.backfill_crashed", error=str(e), exc_info=True)
            self.status_text = STATUS_BACKFILL_FAILED
            return None
        if report is None:
            return None
        if report.state == RunState.FAILED.value:
            self.status_text = STATUS_BACKFILL_FAILED
        elif report.state == RunState.COMPLETED.value:
            self.status_text = STATUS_MONITORING
        return report

    async def wait_backfill(self) -> BackfillReport | None:
        """Wait for the current backfill run, if any."""
        if self._backfill_task is None:
            return None
        return await self._backfill_task

    async def stop(self) -> None:
        """Tear the engine down. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        log.info("monitor.stopping")

        self.scanner.cancel()
        task, self._backfill_task = self._backfill_task, None
        if task is not None and not task.done() and not self.scanner.is_running:
            # Scheduled but not started: nothing is in flight
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        elif task is not None and not task.done():
            grace = self.config.rpc.timeout_secs + 5.0
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=grace)
            except asyncio.TimeoutError:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        await self.supervisor.stop()
        await self.listener.stop()
        await self.feed.close()
        await self.client.close()
        self.status_text = STATUS_STOPPED
        log.info("monitor.stopped", events=len(self.store))

    # ── Outbound ─────────────────────────────────────────────────

    def snapshot(self) -> list[Event]:
        return self.store.snapshot()

    def connection_state(self) -> ConnectionState:
        return self.listener.state

    def scan_progress(self) -> ScanProgress | None:
        return self.scanner.progress

    def subscribe(self, callback: Callable[[Event], None]) -> Callable[[], None]:
        return self.store.subscribe(callback)

    def anomalies(self) -> list[ClassificationAnomaly]:
        return self.store.anomalies()
