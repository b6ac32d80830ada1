"""Reconnect supervisor for the live stream listener.

Waits for the listener to report a disconnect, then drives
``resubscribe()`` with exponential backoff until it succeeds or the
supervisor is stopped.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_exponential

from builderwatch.engine.errors import SubscriptionSetupError
from builderwatch.engine.live_listener import LiveStreamListener
from builderwatch.observability.logger import get_logger

log = get_logger(__name__)


class ReconnectSupervisor:
    """Own the reconnect loop so the listener only handles notifications."""

    def __init__(
        self,
        listener: LiveStreamListener,
        *,
        min_secs: float = 1.0,
        max_secs: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._listener = listener
        self.min_secs = min_secs
        self.max_secs = max_secs
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self.attempts = 0
        self.reconnects = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the loop, including any pending backoff sleep. Idempotent."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        log.warning(
            "supervisor.resubscribe_failed",
            attempt=retry_state.attempt_number,
            next_delay=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
        )

    async def _run(self) -> None:
        while True:
            await self._listener.disconnected.wait()
            log.info("supervisor.reconnecting")
            retrying = AsyncRetrying(
                wait=wait_exponential(multiplier=self.min_secs, min=self.min_secs, max=self.max_secs),
                retry=retry_if_exception_type(SubscriptionSetupError),
                before_sleep=self._before_sleep,
                sleep=self._sleep,
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    self.attempts += 1
                    await self._listener.resubscribe()
            self.reconnects += 1
            log.info("supervisor.reconnected", state=self._listener.state.value)
