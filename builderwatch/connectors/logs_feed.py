"""Websocket feed — push log notifications from the ledger RPC.

One websocket connection carries every ``logsSubscribe`` subscription.
A reader task routes ``logsNotification`` messages to the callback
registered for that subscription id.

The feed does not reconnect on its own. When the socket drops it reports
the disconnect once through ``on_disconnect`` and forgets its handles;
reconnection policy belongs to whoever owns the feed.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

from builderwatch.engine.errors import SubscriptionSetupError
from builderwatch.observability.logger import get_logger

log = get_logger(__name__)

PING_INTERVAL = 20
PING_TIMEOUT = 20


@dataclass(frozen=True)
class LogNotification:
    """A single logsNotification payload."""
    subscription: int
    signature: str
    logs: tuple[str, ...]
    err: Any = None
    slot: int = 0


NotificationCallback = Callable[[LogNotification], None]
DisconnectCallback = Callable[[str], None]
Connector = Callable[..., Awaitable[Any]]


class LogsFeed:
    """Manage a websocket connection carrying log subscriptions."""

    def __init__(
        self,
        ws_url: str,
        *,
        api_key: str = "",
        api_key_mode: str = "query",
        ack_timeout_secs: float = 10.0,
        connect: Connector | None = None,
    ):
        self._url = ws_url
        self._api_key = api_key
        self._api_key_mode = api_key_mode
        self._ack_timeout = ack_timeout_secs
        self._connect_fn: Connector = connect or websockets.connect
        self._ids = itertools.count(1)
        self._ws: Any = None
        self._reader: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._handlers: dict[int, NotificationCallback] = {}
        self._disconnect_callbacks: list[DisconnectCallback] = []
        self._closing = False
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    @property
    def handles(self) -> set[int]:
        return set(self._handlers)

    def on_disconnect(self, callback: DisconnectCallback) -> None:
        """Register a callback invoked once per unexpected disconnect."""
        self._disconnect_callbacks.append(callback)

    def _endpoint(self) -> tuple[str, dict[str, str]]:
        if not self._api_key:
            return self._url, {}
        if self._api_key_mode == "header":
            return self._url, {"x-api-key": self._api_key}
        sep = "&" if "?" in self._url else "?"
        return f"{self._url}{sep}{urlencode({'api-key': self._api_key})}", {}

    async def connect(self) -> None:
        """Open the websocket (no-op when already connected)."""
        async with self._connect_lock:
            if self.connected:
                return
            self._closing = False
            url, headers = self._endpoint()
            kwargs: dict[str, Any] = {"ping_interval": PING_INTERVAL, "ping_timeout": PING_TIMEOUT}
            if headers:
                kwargs["additional_headers"] = headers
            log.info("logs_feed.connecting", url=self._url)
            try:
                self._ws = await self._connect_fn(url, **kwargs)
            except Exception as e:
                self._ws = None
                raise SubscriptionSetupError(f"websocket connect failed: {e}") from e
            self._reader = asyncio.create_task(self._read_loop(self._ws))
            log.info("logs_feed.connected")

    async def on_logs(
        self,
        address: str,
        callback: NotificationCallback,
        commitment: str = "finalized",
    ) -> int:
        """Subscribe to logs mentioning ``address``. Returns the subscription handle."""
        await self.connect()
        req_id = next(self._ids)
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        request = {
            "jsonrpc": "2.0",
            "id": req_id,
            "method": "logsSubscribe",
            "params": [{"mentions": [address]}, {"commitment": commitment}],
        }
        try:
            await self._ws.send(json.dumps(request))
            result = await asyncio.wait_for(fut, timeout=self._ack_timeout)
        except SubscriptionSetupError:
            raise
        except asyncio.TimeoutError as e:
            raise SubscriptionSetupError("logsSubscribe ack timed out", address=address) from e
        except Exception as e:
            raise SubscriptionSetupError(f"logsSubscribe failed: {e}", address=address) from e
        finally:
            self._pending.pop(req_id, None)

        if not isinstance(result, int):
            raise SubscriptionSetupError(f"unexpected subscription id {result!r}", address=address)
        self._handlers[result] = callback
        log.info("logs_feed.subscribed", address=address[:10], handle=result)
        return result

    async def unsubscribe(self, handle: int) -> None:
        """Drop a subscription. Unknown or repeated handles are a no-op."""
        if self._handlers.pop(handle, None) is None:
            return
        if self._ws is None or not self.connected:
            return
        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "logsUnsubscribe",
            "params": [handle],
        }
        try:
            await self._ws.send(json.dumps(request))
        except ConnectionClosed:
            log.debug("logs_feed.unsubscribe_on_closed_socket", handle=handle)

    async def close(self) -> None:
        """Close the connection. Safe to call repeatedly."""
        self._closing = True
        self._handlers.clear()
        reader, self._reader = self._reader, None
        ws, self._ws = self._ws, None
        if reader is not None and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if ws is not None:
            try:
                await ws.close()
            except ConnectionClosed:
                pass
        self._fail_pending("feed closed")

    def _fail_pending(self, reason: str) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(SubscriptionSetupError(reason))
        self._pending.clear()

    async def _read_loop(self, ws: Any) -> None:
        reason = "connection closed"
        try:
            async for raw in ws:
                try:
                    msg = json.loads(raw if isinstance(raw, str) else raw.decode())
                except ValueError as e:
                    log.debug("logs_feed.parse_error", error=str(e))
                    continue
                self._dispatch(msg)
        except ConnectionClosed as e:
            reason = f"connection closed: {e}"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"reader error: {e}"
            log.error("logs_feed.reader_error", error=str(e))

        if self._closing:
            return
        self._handlers.clear()
        self._fail_pending(reason)
        log.warning("logs_feed.disconnected", reason=reason)
        for cb in list(self._disconnect_callbacks):
            try:
                cb(reason)
            except Exception as e:
                log.error("logs_feed.disconnect_callback_error", error=str(e))

    def _dispatch(self, msg: Any) -> None:
        if not isinstance(msg, dict):
            return
        req_id = msg.get("id")
        if req_id is not None and req_id in self._pending:
            fut = self._pending[req_id]
            if fut.done():
                return
            if msg.get("error"):
                err = msg["error"]
                detail = err.get("message", err) if isinstance(err, dict) else err
                fut.set_exception(SubscriptionSetupError(f"rpc error: {detail}"))
            else:
                fut.set_result(msg.get("result"))
            return

        if msg.get("method") != "logsNotification":
            return
        params = msg.get("params") or {}
        handler = self._handlers.get(params.get("subscription"))
        if handler is None:
            return
        result = params.get("result") or {}
        value = result.get("value") or {}
        signature = value.get("signature")
        if not signature:
            return
        note = LogNotification(
            subscription=params["subscription"],
            signature=str(signature),
            logs=tuple(str(line) for line in (value.get("logs") or [])),
            err=value.get("err"),
            slot=int((result.get("context") or {}).get("slot") or 0),
        )
        try:
            handler(note)
        except Exception as e:
            log.error("logs_feed.callback_error", error=str(e), signature=note.signature[:16])
