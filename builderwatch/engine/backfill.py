"""Backfill scanner — bounded historical scan of every watch target.

Run lifecycle: IDLE -> RUNNING -> COMPLETED | FAILED | CANCELLED.
Only one run may be active; a second ``run()`` while RUNNING is ignored.

Per target:
  1. list up to ``signature_limit`` signatures, newest first
  2. drop signatures older than the lookback window
  3. fetch transactions batch by batch (the RPC client enforces the
     inter-batch delay), classify, upsert into the store, report progress

A transport error abandons the rest of that target and moves on to the
next one. Nothing is retried inside a run.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from enum import Enum
from typing import Callable, Protocol, Sequence

from builderwatch.engine.classifier import classify
from builderwatch.engine.errors import ReentrantRunIgnored, TransportError
from builderwatch.engine.event_store import EventStore
from builderwatch.engine.models import (
    BackfillReport,
    EventSource,
    RawLogRecord,
    ScanProgress,
    SignatureInfo,
    TargetReport,
    WatchTarget,
)
from builderwatch.observability.logger import get_logger
from builderwatch.observability.metrics import metrics

log = get_logger(__name__)

ProgressCallback = Callable[[ScanProgress], None]


class RpcClient(Protocol):
    batch_size: int

    async def list_signatures(self, address: str, limit: int) -> list[SignatureInfo]: ...

    async def get_transactions(self, signatures: Sequence[str]) -> list[RawLogRecord | None]: ...


class RunState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class BackfillScanner:
    """Walk a bounded window of history for each target and feed the store."""

    def __init__(
        self,
        client: RpcClient,
        store: EventStore,
        targets: Sequence[WatchTarget],
        *,
        signature_limit: int = 1000,
        lookback_days: int = 14,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._store = store
        self._targets = list(targets)
        self.signature_limit = signature_limit
        self.lookback_days = lookback_days
        self._clock = clock

        self._state = RunState.IDLE
        self._running = False
        self._cancel = asyncio.Event()
        self._progress: ScanProgress | None = None
        self._progress_callbacks: list[ProgressCallback] = []
        self.last_report: BackfillReport | None = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def progress(self) -> ScanProgress | None:
        if self._progress is None:
            return None
        return dataclasses.replace(self._progress)

    def on_progress(self, callback: ProgressCallback) -> None:
        self._progress_callbacks.append(callback)

    def cancel(self) -> None:
        """Stop after the in-flight batch returns.

        A cancel requested before the run starts makes that run end at once.
        """
        self._cancel.set()

    async def run(self, *, strict: bool = False) -> BackfillReport | None:
        """Run one backfill over every target.

        Returns None when a run is already active, or raises
        ReentrantRunIgnored if ``strict`` is set.
        """
        if self._running:
            log.debug("backfill.reentrant_ignored")
            if strict:
                raise ReentrantRunIgnored("backfill already running")
            return None

        self._running = True
        self._state = RunState.RUNNING
        report = BackfillReport(state=RunState.RUNNING.value, started_at=self._clock())
        log.info("backfill.started", targets=len(self._targets), limit=self.signature_limit)

        try:
            for target in self._targets:
                if self._cancel.is_set():
                    break
                report.targets.append(await self._scan_target(target))

            if self._cancel.is_set():
                self._state = RunState.CANCELLED
            elif report.targets and not any(t.ok for t in report.targets):
                self._state = RunState.FAILED
            else:
                self._state = RunState.COMPLETED
        except BaseException:
            self._state = RunState.CANCELLED if self._cancel.is_set() else RunState.FAILED
            raise
        finally:
            report.state = self._state.value
            report.finished_at = self._clock()
            self.last_report = report
            self._progress = None
            self._running = False
            self._cancel.clear()

        log.info(
            "backfill.finished",
            state=report.state,
            events=report.total_events,
            failed_targets=len(report.failed_targets),
            duration_secs=round(report.finished_at - report.started_at, 2),
        )
        return report

    def _within_window(self, sig: SignatureInfo) -> bool:
        if self.lookback_days <= 0 or sig.block_time is None:
            return True
        return sig.block_time >= self._clock() - self.lookback_days * 86400

    def _publish(self) -> None:
        if self._progress is None:
            return
        metrics.gauge("backfill.progress", self._progress.fraction, target=self._progress.target)
        snapshot = dataclasses.replace(self._progress)
        for cb in self._progress_callbacks:
            try:
                cb(snapshot)
            except Exception as e:
                log.error("backfill.progress_callback_error", error=str(e))

    async def _scan_target(self, target: WatchTarget) -> TargetReport:
        tr = TargetReport(target=target)
        try:
            listed = await self._client.list_signatures(target.address, self.signature_limit)
        except TransportError as e:
            tr.error = str(e)
            log.warning("backfill.target_failed", target=target.label, stage="signatures", error=str(e))
            return tr

        sigs = [s for s in listed if self._within_window(s)]
        tr.discovered = len(sigs)
        self._progress = ScanProgress(current=0, total=len(sigs), target=target.label)
        self._publish()

        batch_size = max(1, self._client.batch_size)
        for i in range(0, len(sigs), batch_size):
            if self._cancel.is_set():
                tr.abandoned = len(sigs) - tr.processed
                break
            batch = sigs[i:i + batch_size]
            try:
                records = await self._client.get_transactions([s.signature for s in batch])
            except TransportError as e:
                tr.error = str(e)
                tr.abandoned = len(sigs) - tr.processed
                self._progress.abandoned = tr.abandoned
                self._publish()
                log.warning(
                    "backfill.target_failed",
                    target=target.label,
                    stage="transactions",
                    processed=tr.processed,
                    abandoned=tr.abandoned,
                    error=str(e),
                )
                break

            for sig, record in zip(batch, records):
                if record is None:
                    continue
                if record.block_time is None and sig.block_time is not None:
                    record = dataclasses.replace(record, block_time=sig.block_time)
                event = classify(
                    target.kind,
                    record,
                    source=EventSource.HISTORICAL,
                    label=target.label,
                )
                if event is not None:
                    self._store.upsert(event)
                    tr.events += 1

            tr.processed += len(batch)
            self._progress.current = tr.processed
            self._publish()

        log.info(
            "backfill.target_done",
            target=target.label,
            discovered=tr.discovered,
            processed=tr.processed,
            events=tr.events,
        )
        return tr
