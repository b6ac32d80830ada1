"""Core data model for the chain event feed.

WatchTarget     — fixed configuration: an address plus what it is watched for
RawLogRecord    — transient log payload handed to the classifier
Event           — canonical feed entry, keyed by transaction signature
ScanProgress    — per-run backfill progress
ConnectionState — live stream status
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

EXPLORER_TX_URL = "https://solscan.io/tx/"


class TargetKind(str, Enum):
    DEPLOY = "DEPLOY"
    MULTISIG = "MULTISIG"


class EventKind(str, Enum):
    NEW_DEPLOY = "NEW_DEPLOY"
    PROGRAM_UPGRADE = "PROGRAM_UPGRADE"
    NEW_MULTISIG = "NEW_MULTISIG"


class EventSource(str, Enum):
    HISTORICAL = "HISTORICAL"
    LIVE = "LIVE"


class ConnectionState(str, Enum):
    CONNECTING = "CONNECTING"
    LIVE = "LIVE"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class WatchTarget:
    """An on-chain address and the event kind it is monitored for."""
    address: str
    kind: TargetKind
    label: str


@dataclass(frozen=True)
class RawLogRecord:
    """Log lines of one transaction or live notification.

    ``block_time`` is unix seconds, or None for live notifications.
    ``err`` is the upstream error object; anything truthy means the
    transaction failed.
    """
    signature: str
    logs: tuple[str, ...] = ()
    block_time: float | None = None
    err: Any = None

    @property
    def failed(self) -> bool:
        return bool(self.err)

    @property
    def text(self) -> str:
        return "\n".join(self.logs)


@dataclass(frozen=True)
class SignatureInfo:
    """One entry of a getSignaturesForAddress response."""
    signature: str
    block_time: float | None = None
    err: Any = None
    slot: int = 0


@dataclass(frozen=True)
class Event:
    """A classified, tracked on-chain event."""
    signature: str
    kind: EventKind
    timestamp: float
    summary: str
    detail: str
    source: EventSource

    @property
    def when(self) -> dt.datetime:
        return dt.datetime.fromtimestamp(self.timestamp, tz=dt.timezone.utc)

    @property
    def link(self) -> str:
        return EXPLORER_TX_URL + self.signature

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "summary": self.summary,
            "detail": self.detail,
            "source": self.source.value,
            "link": self.link,
        }


@dataclass
class ScanProgress:
    """Progress of the target currently being backfilled."""
    current: int = 0
    total: int = 0
    target: str = ""
    abandoned: int = 0

    @property
    def fraction(self) -> float:
        if self.total == 0:
            return 1.0
        return self.current / self.total


@dataclass
class TargetReport:
    """Outcome of backfilling a single target."""
    target: WatchTarget
    discovered: int = 0
    processed: int = 0
    events: int = 0
    abandoned: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error


@dataclass
class BackfillReport:
    """Outcome of a whole backfill run."""
    state: str = "COMPLETED"
    targets: list[TargetReport] = field(default_factory=list)
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def total_events(self) -> int:
        return sum(t.events for t in self.targets)

    @property
    def failed_targets(self) -> list[TargetReport]:
        return [t for t in self.targets if not t.ok]
