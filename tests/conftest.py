"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Sequence

import pytest

# Ensure the package is importable without installation
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from builderwatch.connectors.logs_feed import LogNotification  # noqa: E402
from builderwatch.engine.errors import SubscriptionSetupError, TransportError  # noqa: E402
from builderwatch.engine.models import (  # noqa: E402
    RawLogRecord,
    SignatureInfo,
    TargetKind,
    WatchTarget,
)

DEPLOY_LOGS = (
    "Program BPFLoaderUpgradeab1e11111111111111111111111 invoke [1]",
    "Program log: Instruction: DeployWithMaxDataLen",
    "Program BPFLoaderUpgradeab1e11111111111111111111111 success",
)
UPGRADE_LOGS = (
    "Program BPFLoaderUpgradeab1e11111111111111111111111 invoke [1]",
    "Program upgraded",
    "Program BPFLoaderUpgradeab1e11111111111111111111111 success",
)
MULTISIG_LOGS = (
    "Program SMPLecH2AezpSws9asubG7v6gde66S5S6p7J93rAnp7 invoke [1]",
    "Program log: Instruction: MultisigCreate",
)
NOISE_LOGS = ("Program 11111111111111111111111111111111 invoke [1]", "Program log: transfer")

DEPLOY_TARGET = WatchTarget(address="LoaderAddr111", kind=TargetKind.DEPLOY, label="Program")
MULTISIG_TARGET = WatchTarget(address="SquadsAddr111", kind=TargetKind.MULTISIG, label="Squad")


class FakeRpcClient:
    """In-memory stand-in for SolanaRPCClient."""

    def __init__(
        self,
        signatures: dict[str, list[SignatureInfo]] | None = None,
        transactions: dict[str, RawLogRecord] | None = None,
        *,
        batch_size: int = 20,
        fail_signatures_for: set[str] | None = None,
        fail_on_call: int | None = None,
    ):
        self.batch_size = batch_size
        self.signatures = signatures or {}
        self.transactions = transactions or {}
        self.fail_signatures_for = fail_signatures_for or set()
        self.fail_on_call = fail_on_call
        self.tx_calls: list[list[str]] = []
        self.closed = False

    async def list_signatures(self, address: str, limit: int) -> list[SignatureInfo]:
        if address in self.fail_signatures_for:
            raise TransportError("getSignaturesForAddress: HTTP 503", status=503)
        return list(self.signatures.get(address, []))[:limit]

    async def get_transactions(self, signatures: Sequence[str]) -> list[RawLogRecord | None]:
        self.tx_calls.append(list(signatures))
        if self.fail_on_call is not None and len(self.tx_calls) == self.fail_on_call:
            raise TransportError("getTransaction: ReadTimeout")
        return [self.transactions.get(sig) for sig in signatures]

    async def close(self) -> None:
        self.closed = True


class FakeLogsFeed:
    """In-memory stand-in for LogsFeed."""

    def __init__(self, fail_addresses: set[str] | None = None, fail_times: int = 0):
        self.fail_addresses = fail_addresses or set()
        self.fail_times = fail_times
        self.handlers: dict[int, tuple[str, Any]] = {}
        self.unsubscribed: list[int] = []
        self.subscribe_calls = 0
        self.closed = False
        self._next = 100
        self._disconnect_callbacks: list[Any] = []

    def on_disconnect(self, callback: Any) -> None:
        self._disconnect_callbacks.append(callback)

    async def on_logs(self, address: str, callback: Any, commitment: str = "finalized") -> int:
        self.subscribe_calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise SubscriptionSetupError("websocket connect failed", address=address)
        if address in self.fail_addresses:
            raise SubscriptionSetupError("rpc error", address=address)
        self._next += 1
        self.handlers[self._next] = (address, callback)
        return self._next

    async def unsubscribe(self, handle: int) -> None:
        if self.handlers.pop(handle, None) is not None:
            self.unsubscribed.append(handle)

    async def close(self) -> None:
        self.closed = True
        self.handlers.clear()

    def emit(self, address: str, signature: str, logs: Sequence[str], err: Any = None) -> None:
        for handle, (addr, cb) in list(self.handlers.items()):
            if addr == address:
                cb(LogNotification(subscription=handle, signature=signature, logs=tuple(logs), err=err))

    def drop(self, reason: str = "connection closed") -> None:
        self.handlers.clear()
        for cb in self._disconnect_callbacks:
            cb(reason)


def sig(signature: str, block_time: float | None = None, err: Any = None) -> SignatureInfo:
    return SignatureInfo(signature=signature, block_time=block_time, err=err)


def tx(signature: str, logs: Sequence[str], block_time: float | None = None, err: Any = None) -> RawLogRecord:
    return RawLogRecord(signature=signature, logs=tuple(logs), block_time=block_time, err=err)


@pytest.fixture
def fake_feed() -> FakeLogsFeed:
    return FakeLogsFeed()
