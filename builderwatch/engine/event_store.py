"""Event store — the single merge point for backfill and live events.

Events are keyed by transaction signature. ``upsert`` inserts or replaces
under a lock, so the two producers can write concurrently without losing
writes or duplicating a signature. Replacements keep the original
insertion sequence, which is the tie-break for equal timestamps.

Scaling: upsert is O(1). ``snapshot`` sorts the whole feed (O(n log n))
on the first read after a write and serves the cached result until the
next write. That is comfortable for session feeds in the low tens of
thousands of events; there is no eviction, the feed grows for the session.
"""

from __future__ import annotations

from threading import Lock
from typing import Callable

from builderwatch.engine.errors import ClassificationAnomaly
from builderwatch.engine.models import Event
from builderwatch.observability.logger import get_logger
from builderwatch.observability.metrics import metrics

log = get_logger(__name__)

ChangeCallback = Callable[[Event], None]


class EventStore:
    """Thread-safe, signature-keyed event feed with descending time order."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: dict[str, tuple[int, Event]] = {}
        self._seq = 0
        self._sorted: tuple[Event, ...] | None = ()
        self._anomalies: list[ClassificationAnomaly] = []
        self._subscribers: list[ChangeCallback] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, signature: object) -> bool:
        with self._lock:
            return signature in self._entries

    def get(self, signature: str) -> Event | None:
        with self._lock:
            entry = self._entries.get(signature)
            return entry[1] if entry else None

    def upsert(self, event: Event) -> bool:
        """Insert or replace by signature. Returns True if the signature was new."""
        anomaly: ClassificationAnomaly | None = None
        with self._lock:
            existing = self._entries.get(event.signature)
            if existing is None:
                self._seq += 1
                seq = self._seq
                created = True
            else:
                seq, previous = existing
                created = False
                if previous.kind != event.kind or previous.summary != event.summary:
                    anomaly = ClassificationAnomaly(
                        signature=event.signature,
                        previous=previous,
                        incoming=event,
                    )
                    self._anomalies.append(anomaly)
            self._entries[event.signature] = (seq, event)
            self._sorted = None
            subscribers = list(self._subscribers)

        metrics.incr("store.upserts", source=event.source.value)
        if anomaly is not None:
            metrics.incr("store.anomalies")
            log.error(
                "event_store.classification_mismatch",
                signature=event.signature,
                previous_kind=anomaly.previous.kind.value,
                incoming_kind=event.kind.value,
                previous_source=anomaly.previous.source.value,
                incoming_source=event.source.value,
            )

        for cb in subscribers:
            try:
                cb(event)
            except Exception as e:
                log.error("event_store.subscriber_error", error=str(e))
        return created

    def snapshot(self) -> list[Event]:
        """All events, newest first; equal timestamps keep insertion order."""
        with self._lock:
            if self._sorted is None:
                ordered = sorted(self._entries.values(), key=lambda e: (-e[1].timestamp, e[0]))
                self._sorted = tuple(event for _, event in ordered)
            return list(self._sorted)

    def anomalies(self) -> list[ClassificationAnomaly]:
        with self._lock:
            return list(self._anomalies)

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register a change callback. Returns a function that removes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe
