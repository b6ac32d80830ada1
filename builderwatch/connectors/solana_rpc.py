"""Solana JSON-RPC connector (HTTP).

Endpoints used:
  - getSignaturesForAddress(address, {limit, before, commitment})
  - getTransaction(signature, {encoding: jsonParsed,
                               maxSupportedTransactionVersion: 0})
    sent as JSON-RPC batch requests of ``batch_size`` calls

The client never retries. Every failure is raised as TransportError and the
caller decides what a missed window costs.
"""

from __future__ import annotations

import itertools
import time
from typing import Any, Sequence

import httpx

from builderwatch.config import RpcConfig
from builderwatch.connectors.rate_limiter import BatchThrottle, BucketConfig, TokenBucket
from builderwatch.engine.errors import TransportError
from builderwatch.engine.models import RawLogRecord, SignatureInfo
from builderwatch.observability.logger import get_logger
from builderwatch.observability.metrics import metrics

log = get_logger(__name__)

_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
    "User-Agent": "builderwatch/1.0",
}

MAX_SIGNATURE_PAGE = 1000
DEFAULT_BATCH_SIZE = 20


class SolanaRPCClient:
    """Async, rate-limited client for the ledger's JSON-RPC HTTP endpoint."""

    def __init__(
        self,
        config: RpcConfig | None = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay_ms: int = 250,
        transport: httpx.AsyncBaseTransport | None = None,
        throttle: BatchThrottle | None = None,
        bucket: TokenBucket | None = None,
    ):
        self._config = config or RpcConfig()
        self.batch_size = batch_size
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)
        self.throttle = throttle or BatchThrottle(batch_delay_ms / 1000.0)
        self._bucket = bucket or TokenBucket(BucketConfig(
            tokens_per_second=self._config.requests_per_second,
            max_burst=self._config.max_burst,
            name="solana_rpc",
        ))

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = dict(_HEADERS)
            params: dict[str, str] = {}
            if self._config.api_key:
                if self._config.api_key_mode == "header":
                    headers["x-api-key"] = self._config.api_key
                else:
                    params["api-key"] = self._config.api_key
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout_secs, connect=10.0),
                headers=headers,
                params=params,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Transport ────────────────────────────────────────────────

    def _request(self, method: str, params: list[Any]) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

    async def _post(self, payload: Any, method: str) -> Any:
        client = await self._ensure_client()
        await self._bucket.acquire()
        start = time.monotonic()
        metrics.incr("rpc.calls", method=method)
        try:
            resp = await client.post(self._config.http_url, json=payload)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            metrics.incr("rpc.errors", method=method)
            raise TransportError(
                f"{method}: HTTP {e.response.status_code}",
                method=method,
                status=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            metrics.incr("rpc.errors", method=method)
            raise TransportError(f"{method}: {type(e).__name__}: {e}", method=method) from e
        except ValueError as e:
            metrics.incr("rpc.errors", method=method)
            raise TransportError(f"{method}: invalid JSON body", method=method) from e
        finally:
            metrics.histogram("rpc.latency_ms", (time.monotonic() - start) * 1000, method=method)

    async def _call(self, method: str, params: list[Any]) -> Any:
        body = await self._post(self._request(method, params), method)
        if not isinstance(body, dict):
            raise TransportError(f"{method}: malformed response", method=method)
        if body.get("error"):
            raise TransportError(f"{method}: {_error_message(body['error'])}", method=method)
        if "result" not in body:
            raise TransportError(f"{method}: response has no result", method=method)
        return body["result"]

    async def _call_batch(self, method: str, param_sets: Sequence[list[Any]]) -> list[Any]:
        requests = [self._request(method, p) for p in param_sets]
        body = await self._post(requests, method)
        if not isinstance(body, list):
            if isinstance(body, dict) and body.get("error"):
                raise TransportError(f"{method}: {_error_message(body['error'])}", method=method)
            raise TransportError(f"{method}: malformed batch response", method=method)

        by_id: dict[Any, Any] = {}
        for item in body:
            if not isinstance(item, dict) or "id" not in item:
                raise TransportError(f"{method}: malformed batch item", method=method)
            if item.get("error"):
                raise TransportError(f"{method}: {_error_message(item['error'])}", method=method)
            by_id[item["id"]] = item.get("result")

        missing = [r["id"] for r in requests if r["id"] not in by_id]
        if missing:
            raise TransportError(f"{method}: {len(missing)} batch responses missing", method=method)
        return [by_id[r["id"]] for r in requests]

    # ── Signatures ───────────────────────────────────────────────

    async def list_signatures(self, address: str, limit: int = MAX_SIGNATURE_PAGE) -> list[SignatureInfo]:
        """Return up to ``limit`` signatures for an address, newest first."""
        out: list[SignatureInfo] = []
        before: str | None = None
        while len(out) < limit:
            page_size = min(MAX_SIGNATURE_PAGE, limit - len(out))
            opts: dict[str, Any] = {"limit": page_size, "commitment": self._config.commitment}
            if before:
                opts["before"] = before
            result = await self._call("getSignaturesForAddress", [address, opts])
            if not isinstance(result, list):
                raise TransportError(
                    "getSignaturesForAddress: result is not a list",
                    method="getSignaturesForAddress",
                )
            page = [_parse_signature(item) for item in result]
            out.extend(page)
            if len(page) < page_size:
                break
            before = page[-1].signature

        log.debug("solana_rpc.signatures_fetched", address=address[:10], count=len(out))
        return out[:limit]

    # ── Transactions ─────────────────────────────────────────────

    async def get_transactions(self, signatures: Sequence[str]) -> list[RawLogRecord | None]:
        """Fetch parsed transactions, aligned by position with ``signatures``.

        Calls are split into batches of ``batch_size``; the inter-batch
        throttle is honoured before every batch.
        """
        records: list[RawLogRecord | None] = []
        opts = {
            "encoding": "jsonParsed",
            "maxSupportedTransactionVersion": 0,
            "commitment": self._config.commitment,
        }
        for i in range(0, len(signatures), self.batch_size):
            chunk = list(signatures[i:i + self.batch_size])
            await self.throttle.wait()
            try:
                results = await self._call_batch("getTransaction", [[sig, opts] for sig in chunk])
            finally:
                self.throttle.mark()
            metrics.incr("rpc.batches")
            for sig, raw in zip(chunk, results):
                records.append(_parse_transaction(sig, raw))
        return records


# ── Parsers ──────────────────────────────────────────────────────────

def _error_message(err: Any) -> str:
    if isinstance(err, dict):
        return f"RPC error {err.get('code', '?')}: {err.get('message', '')}"
    return f"RPC error: {err}"


def _parse_signature(raw: Any) -> SignatureInfo:
    if not isinstance(raw, dict) or not raw.get("signature"):
        raise TransportError(
            "getSignaturesForAddress: malformed signature entry",
            method="getSignaturesForAddress",
        )
    block_time = raw.get("blockTime")
    return SignatureInfo(
        signature=str(raw["signature"]),
        block_time=float(block_time) if block_time is not None else None,
        err=raw.get("err"),
        slot=int(raw.get("slot") or 0),
    )


def _parse_transaction(signature: str, raw: Any) -> RawLogRecord | None:
    """Turn a getTransaction result into a RawLogRecord (None if not found)."""
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise TransportError("getTransaction: malformed transaction", method="getTransaction")
    meta = raw.get("meta") or {}
    logs = meta.get("logMessages") or []
    block_time = raw.get("blockTime")
    return RawLogRecord(
        signature=signature,
        logs=tuple(str(line) for line in logs),
        block_time=float(block_time) if block_time is not None else None,
        err=meta.get("err"),
    )
