"""Event classifier — decides whether a transaction's logs are a tracked event.

Detection rules live in ``PATTERNS`` and nowhere else. Rows are evaluated
in order and the first match wins, so a record carrying both the upgrade
and the deploy marker classifies as an upgrade.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from builderwatch.engine.models import (
    Event,
    EventKind,
    EventSource,
    RawLogRecord,
    TargetKind,
)


@dataclass(frozen=True)
class LogPattern:
    """One row of the detection table."""
    target_kind: TargetKind
    needles: tuple[str, ...]
    event_kind: EventKind
    summary: str

    def matches(self, text: str) -> bool:
        return any(needle in text for needle in self.needles)


PATTERNS: tuple[LogPattern, ...] = (
    LogPattern(TargetKind.DEPLOY, ("Program upgraded",), EventKind.PROGRAM_UPGRADE, "Program Upgraded"),
    LogPattern(TargetKind.DEPLOY, ("DeployWithMaxDataLen",), EventKind.NEW_DEPLOY, "New Program Deployed"),
    LogPattern(
        TargetKind.MULTISIG,
        ("Instruction: MultisigCreate", "Instruction: CreateMultisig"),
        EventKind.NEW_MULTISIG,
        "New Multisig Created",
    ),
)


def match_pattern(
    kind: TargetKind,
    text: str,
    patterns: tuple[LogPattern, ...] = PATTERNS,
) -> LogPattern | None:
    for pattern in patterns:
        if pattern.target_kind == kind and pattern.matches(text):
            return pattern
    return None


def describe(source: EventSource, label: str) -> str:
    if source is EventSource.LIVE:
        return f"Detected live on {label}" if label else "Detected live"
    return f"Found in historical scan of {label}" if label else "Found in historical scan"


def classify(
    kind: TargetKind,
    record: RawLogRecord,
    *,
    source: EventSource = EventSource.HISTORICAL,
    label: str = "",
    now: float | None = None,
) -> Event | None:
    """Classify a log record. Returns None for failed or unrecognised records."""
    if record.failed:
        return None
    pattern = match_pattern(kind, record.text)
    if pattern is None:
        return None

    if record.block_time is not None:
        timestamp = record.block_time
    else:
        timestamp = now if now is not None else time.time()

    return Event(
        signature=record.signature,
        kind=pattern.event_kind,
        timestamp=timestamp,
        summary=pattern.summary,
        detail=describe(source, label),
        source=source,
    )
