"""Tests for the backfill scanner: batching, progress, failure isolation."""

from __future__ import annotations

import asyncio

import pytest
from conftest import (
    DEPLOY_LOGS,
    DEPLOY_TARGET,
    MULTISIG_LOGS,
    MULTISIG_TARGET,
    NOISE_LOGS,
    UPGRADE_LOGS,
    FakeRpcClient,
    sig,
    tx,
)

from builderwatch.engine.backfill import BackfillScanner, RunState
from builderwatch.engine.errors import ReentrantRunIgnored
from builderwatch.engine.event_store import EventStore
from builderwatch.engine.models import EventKind, EventSource, ScanProgress

T1 = 1_700_000_000.0
T3 = 1_700_000_300.0


def _scanner(client: FakeRpcClient, store: EventStore, targets=None, **kwargs) -> BackfillScanner:
    kwargs.setdefault("lookback_days", 0)
    return BackfillScanner(client, store, targets or [DEPLOY_TARGET], **kwargs)


class TestScenario:
    @pytest.mark.asyncio
    async def test_deploy_upgrade_and_failed_tx(self) -> None:
        client = FakeRpcClient(
            signatures={DEPLOY_TARGET.address: [sig("s3", T3), sig("s2", T1 + 100, err={"x": 1}), sig("s1", T1)]},
            transactions={
                "s1": tx("s1", DEPLOY_LOGS, block_time=T1),
                "s2": tx("s2", DEPLOY_LOGS, block_time=T1 + 100, err={"x": 1}),
                "s3": tx("s3", UPGRADE_LOGS, block_time=T3),
            },
        )
        store = EventStore()
        report = await _scanner(client, store).run()

        snap = store.snapshot()
        assert [(e.signature, e.kind) for e in snap] == [
            ("s3", EventKind.PROGRAM_UPGRADE),
            ("s1", EventKind.NEW_DEPLOY),
        ]
        assert all(e.source is EventSource.HISTORICAL for e in snap)
        assert report.state == "COMPLETED"
        assert report.targets[0].events == 2
        assert report.targets[0].processed == 3

    @pytest.mark.asyncio
    async def test_batch_failure_abandons_rest_and_moves_on(self) -> None:
        deploy_sigs = [sig(f"d{i}", T1 + i) for i in range(6)]
        client = FakeRpcClient(
            signatures={
                DEPLOY_TARGET.address: deploy_sigs,
                MULTISIG_TARGET.address: [sig("m1", T3)],
            },
            transactions={
                **{s.signature: tx(s.signature, DEPLOY_LOGS, block_time=s.block_time) for s in deploy_sigs},
                "m1": tx("m1", MULTISIG_LOGS, block_time=T3),
            },
            batch_size=2,
            fail_on_call=2,
        )
        store = EventStore()
        scanner = _scanner(client, store, [DEPLOY_TARGET, MULTISIG_TARGET])
        updates: list[ScanProgress] = []
        scanner.on_progress(updates.append)

        report = await scanner.run()

        deploy_report, multisig_report = report.targets
        assert deploy_report.processed == 2
        assert deploy_report.abandoned == 4
        assert deploy_report.events == 2
        assert "ReadTimeout" in deploy_report.error
        assert multisig_report.ok
        assert multisig_report.events == 1
        assert report.state == "COMPLETED"

        deploy_updates = [u for u in updates if u.target == "Program"]
        assert deploy_updates[-1].current == 2
        assert deploy_updates[-1].total == 6
        assert deploy_updates[-1].abandoned == 4
        assert {e.signature for e in store.snapshot()} == {"d0", "d1", "m1"}


class TestBatching:
    @pytest.mark.asyncio
    async def test_fixed_size_batches_in_order(self) -> None:
        sigs = [sig(f"s{i}", T1 - i) for i in range(45)]
        client = FakeRpcClient(signatures={DEPLOY_TARGET.address: sigs})
        await _scanner(client, EventStore()).run()
        assert [len(c) for c in client.tx_calls] == [20, 20, 5]
        assert client.tx_calls[0][0] == "s0"
        assert client.tx_calls[-1][-1] == "s44"

    @pytest.mark.asyncio
    async def test_progress_counts_up_to_total(self) -> None:
        sigs = [sig(f"s{i}", T1) for i in range(5)]
        client = FakeRpcClient(signatures={DEPLOY_TARGET.address: sigs}, batch_size=2)
        scanner = _scanner(client, EventStore())
        updates: list[ScanProgress] = []
        scanner.on_progress(updates.append)
        await scanner.run()
        assert [(u.current, u.total) for u in updates] == [(0, 5), (2, 5), (4, 5), (5, 5)]
        assert scanner.progress is None

    @pytest.mark.asyncio
    async def test_signature_limit_passed_through(self) -> None:
        sigs = [sig(f"s{i}", T1) for i in range(30)]
        client = FakeRpcClient(signatures={DEPLOY_TARGET.address: sigs})
        scanner = _scanner(client, EventStore(), signature_limit=10)
        report = await scanner.run()
        assert report.targets[0].discovered == 10

    @pytest.mark.asyncio
    async def test_missing_transaction_and_noise_skipped(self) -> None:
        client = FakeRpcClient(
            signatures={DEPLOY_TARGET.address: [sig("a", T1), sig("b", T1)]},
            transactions={"b": tx("b", NOISE_LOGS, block_time=T1)},
        )
        store = EventStore()
        report = await _scanner(client, store).run()
        assert len(store) == 0
        assert report.targets[0].processed == 2

    @pytest.mark.asyncio
    async def test_signature_block_time_fills_gap(self) -> None:
        client = FakeRpcClient(
            signatures={DEPLOY_TARGET.address: [sig("a", T3)]},
            transactions={"a": tx("a", DEPLOY_LOGS, block_time=None)},
        )
        store = EventStore()
        await _scanner(client, store).run()
        assert store.get("a").timestamp == T3


class TestLookbackWindow:
    @pytest.mark.asyncio
    async def test_old_signatures_dropped(self) -> None:
        now = T3
        client = FakeRpcClient(
            signatures={
                DEPLOY_TARGET.address: [
                    sig("fresh", now - 3600),
                    sig("no_time", None),
                    sig("stale", now - 30 * 86400),
                ],
            },
        )
        scanner = BackfillScanner(
            client, EventStore(), [DEPLOY_TARGET], lookback_days=14, clock=lambda: now,
        )
        report = await scanner.run()
        assert report.targets[0].discovered == 2
        assert client.tx_calls == [["fresh", "no_time"]]


class TestRunLifecycle:
    @pytest.mark.asyncio
    async def test_signature_failure_isolated(self) -> None:
        client = FakeRpcClient(
            signatures={MULTISIG_TARGET.address: [sig("m1", T1)]},
            transactions={"m1": tx("m1", MULTISIG_LOGS, block_time=T1)},
            fail_signatures_for={DEPLOY_TARGET.address},
        )
        store = EventStore()
        report = await _scanner(client, store, [DEPLOY_TARGET, MULTISIG_TARGET]).run()
        assert not report.targets[0].ok
        assert report.targets[1].ok
        assert report.state == "COMPLETED"
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_all_targets_failing_marks_failed(self) -> None:
        client = FakeRpcClient(fail_signatures_for={DEPLOY_TARGET.address, MULTISIG_TARGET.address})
        scanner = _scanner(client, EventStore(), [DEPLOY_TARGET, MULTISIG_TARGET])
        report = await scanner.run()
        assert report.state == "FAILED"
        assert scanner.state is RunState.FAILED
        assert not scanner.is_running

    @pytest.mark.asyncio
    async def test_reentrant_run_is_ignored(self) -> None:
        gate = asyncio.Event()

        class SlowClient(FakeRpcClient):
            async def list_signatures(self, address, limit):
                await gate.wait()
                return await super().list_signatures(address, limit)

        client = SlowClient(signatures={DEPLOY_TARGET.address: [sig("a", T1)]})
        scanner = _scanner(client, EventStore())
        first = asyncio.create_task(scanner.run())
        await asyncio.sleep(0)
        assert scanner.state is RunState.RUNNING

        assert await scanner.run() is None
        with pytest.raises(ReentrantRunIgnored):
            await scanner.run(strict=True)

        gate.set()
        report = await first
        assert report.state == "COMPLETED"
        assert scanner.state is RunState.COMPLETED

    @pytest.mark.asyncio
    async def test_fresh_run_allowed_after_completion(self) -> None:
        client = FakeRpcClient(signatures={DEPLOY_TARGET.address: [sig("a", T1)]})
        scanner = _scanner(client, EventStore())
        assert (await scanner.run()).state == "COMPLETED"
        assert (await scanner.run()).state == "COMPLETED"
        assert len(client.tx_calls) == 2

    @pytest.mark.asyncio
    async def test_cancel_stops_after_in_flight_batch(self) -> None:
        sigs = [sig(f"s{i}", T1) for i in range(6)]
        store = EventStore()

        class CancellingClient(FakeRpcClient):
            async def get_transactions(self, signatures):
                result = await super().get_transactions(signatures)
                scanner.cancel()
                return result

        client = CancellingClient(
            signatures={DEPLOY_TARGET.address: sigs},
            transactions={s.signature: tx(s.signature, DEPLOY_LOGS, block_time=T1) for s in sigs},
            batch_size=2,
        )
        scanner = _scanner(client, store, [DEPLOY_TARGET, MULTISIG_TARGET])
        report = await scanner.run()

        assert len(client.tx_calls) == 1
        assert len(store) == 2
        assert report.state == "CANCELLED"
        assert report.targets[0].abandoned == 4
        assert len(report.targets) == 1

    @pytest.mark.asyncio
    async def test_cancel_before_run_ends_that_run_only(self) -> None:
        client = FakeRpcClient(
            signatures={DEPLOY_TARGET.address: [sig("a", T1)]},
            transactions={"a": tx("a", DEPLOY_LOGS, block_time=T1)},
        )
        store = EventStore()
        scanner = _scanner(client, store)

        scanner.cancel()
        report = await scanner.run()
        assert report.state == "CANCELLED"
        assert client.tx_calls == []
        assert len(store) == 0

        assert (await scanner.run()).state == "COMPLETED"
        assert len(store) == 1
