"""Error taxonomy for the chain event engine.

Nothing here is fatal to the process. Transport and subscription errors
degrade the feed; re-entrant backfill requests are a benign signal.
Classification misses are not errors at all (``classify`` returns None).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from builderwatch.engine.models import Event


class BuilderWatchError(Exception):
    """Base class for engine errors."""


class TransportError(BuilderWatchError):
    """Network failure, timeout, non-2xx or malformed RPC payload."""

    def __init__(self, message: str, *, method: str = "", status: int | None = None):
        super().__init__(message)
        self.method = method
        self.status = status


class SubscriptionSetupError(BuilderWatchError):
    """A live log subscription could not be established."""

    def __init__(self, message: str, *, address: str = ""):
        super().__init__(message)
        self.address = address


class ReentrantRunIgnored(BuilderWatchError):
    """A backfill run was requested while another one is active."""


@dataclass(frozen=True)
class ClassificationAnomaly:
    """Two writes for one signature disagreed on kind or summary."""
    signature: str
    previous: Event
    incoming: Event
    detected_at: float = field(default_factory=time.time)
