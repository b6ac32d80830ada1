"""Live stream listener — classifies pushed log notifications into the store.

State machine (ConnectionState):
  CONNECTING  subscriptions requested, nothing received yet
  LIVE        at least one notification received
  DEGRADED    some targets failed to subscribe and nothing received yet,
              or the socket dropped
  FAILED      no target could be subscribed; feed is backfill-only

The notification handler runs inline on the feed's reader task, so it only
classifies and upserts. Reconnection is driven from outside through
``resubscribe()``.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Protocol, Sequence

from builderwatch.engine.classifier import classify
from builderwatch.engine.errors import SubscriptionSetupError
from builderwatch.engine.event_store import EventStore
from builderwatch.engine.models import ConnectionState, EventSource, RawLogRecord, WatchTarget
from builderwatch.observability.logger import get_logger
from builderwatch.observability.metrics import metrics

log = get_logger(__name__)

StateCallback = Callable[[ConnectionState], None]


class LogsTransport(Protocol):
    def on_disconnect(self, callback: Callable[[str], None]) -> None: ...

    async def on_logs(self, address: str, callback: Callable[[Any], None], commitment: str = ...) -> int: ...

    async def unsubscribe(self, handle: int) -> None: ...


class LiveStreamListener:
    """Subscribe once per watch target and push classified events to the store."""

    def __init__(
        self,
        feed: LogsTransport,
        store: EventStore,
        targets: Sequence[WatchTarget],
        *,
        commitment: str = "finalized",
        clock: Callable[[], float] = time.time,
    ):
        self._feed = feed
        self._store = store
        self._targets = list(targets)
        self.commitment = commitment
        self._clock = clock

        self._state = ConnectionState.CONNECTING
        self._state_callbacks: list[StateCallback] = []
        self._handles: dict[str, int] = {}
        self._failed: set[str] = set()
        self._stopped = False
        self._lock = asyncio.Lock()
        self.disconnected = asyncio.Event()
        self.notifications_received = 0

        self._feed.on_disconnect(self._on_disconnect)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def subscribed_addresses(self) -> set[str]:
        return set(self._handles)

    def on_state_change(self, callback: StateCallback) -> None:
        self._state_callbacks.append(callback)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        log.info("live_listener.state", previous=self._state.value, state=state.value)
        self._state = state
        for cb in self._state_callbacks:
            try:
                cb(state)
            except Exception as e:
                log.error("live_listener.state_callback_error", error=str(e))

    async def start(self) -> ConnectionState:
        """Subscribe every target. Never raises; the outcome is the returned state."""
        async with self._lock:
            self._stopped = False
            await self._subscribe_all()
        return self._state

    async def resubscribe(self) -> ConnectionState:
        """Drop existing subscriptions and subscribe again.

        Raises SubscriptionSetupError when any target could not be
        subscribed, so a supervisor keeps backing off until all of them are.
        Targets that did subscribe stay subscribed in the meantime.
        """
        async with self._lock:
            if self._stopped:
                self.disconnected.clear()
                return self._state
            await self._unsubscribe_all()
            self.disconnected.clear()
            self._set_state(ConnectionState.CONNECTING)
            await self._subscribe_all()
            if self._failed:
                raise SubscriptionSetupError(
                    f"{len(self._failed)} of {len(self._targets)} log subscriptions not re-established",
                    address=sorted(self._failed)[0],
                )
        return self._state

    async def stop(self) -> None:
        """Unsubscribe everything. Idempotent."""
        async with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self.disconnected.clear()
            await self._unsubscribe_all()
        log.info("live_listener.stopped")

    async def _subscribe_all(self) -> None:
        self._failed.clear()
        for target in self._targets:
            try:
                handle = await self._feed.on_logs(
                    target.address,
                    self._make_handler(target),
                    self.commitment,
                )
            except SubscriptionSetupError as e:
                self._failed.add(target.address)
                log.warning("live_listener.subscribe_failed", target=target.label, error=str(e))
                continue
            self._handles[target.address] = handle

        if not self._targets:
            return
        if not self._handles:
            self._set_state(ConnectionState.FAILED)
        elif self._failed:
            self._set_state(ConnectionState.DEGRADED)
        else:
            self._set_state(ConnectionState.CONNECTING)

    async def _unsubscribe_all(self) -> None:
        handles, self._handles = self._handles, {}
        for handle in handles.values():
            await self._feed.unsubscribe(handle)

    def _make_handler(self, target: WatchTarget) -> Callable[[Any], None]:
        def _handle(note: Any) -> None:
            self._on_notification(target, note)
        return _handle

    def _on_notification(self, target: WatchTarget, note: Any) -> None:
        if self._stopped or target.address not in self._handles:
            return
        self.notifications_received += 1
        metrics.incr("live.notifications", target=target.label)
        if self._state in (ConnectionState.CONNECTING, ConnectionState.DEGRADED):
            self._set_state(ConnectionState.LIVE)

        # Notifications carry no block time; reuse the one backfill already found
        known = self._store.get(note.signature)
        record = RawLogRecord(
            signature=note.signature,
            logs=tuple(note.logs),
            block_time=known.timestamp if known else None,
            err=note.err,
        )
        event = classify(
            target.kind,
            record,
            source=EventSource.LIVE,
            label=target.label,
            now=self._clock(),
        )
        if event is None:
            return
        self._store.upsert(event)
        log.info("live_listener.event", kind=event.kind.value, signature=event.signature[:16])

    def _on_disconnect(self, reason: str) -> None:
        if self._stopped:
            return
        self._handles.clear()
        self._set_state(ConnectionState.DEGRADED)
        self.disconnected.set()
        log.warning("live_listener.disconnected", reason=reason)
