"""CLI entry point for BuilderWatch.

Commands:
  builderwatch watch       — Backfill, then stream new deploys/multisigs live
  builderwatch backfill    — Run one historical scan and print the feed
  builderwatch targets     — List configured watch targets
"""

from __future__ import annotations

import asyncio
import json
import signal
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from builderwatch.config import BuilderWatchConfig, load_config
from builderwatch.engine.models import Event, EventKind, ScanProgress
from builderwatch.observability.logger import configure_logging, get_logger
from builderwatch.observability.metrics import metrics

load_dotenv()

console = Console()
log = get_logger(__name__)

_KIND_STYLE = {
    EventKind.NEW_DEPLOY: "blue",
    EventKind.PROGRAM_UPGRADE: "magenta",
    EventKind.NEW_MULTISIG: "green",
}


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


def _event_line(event: Event) -> str:
    style = _KIND_STYLE.get(event.kind, "white")
    when = event.when.strftime("%Y-%m-%d %H:%M:%S")
    return (
        f"[{style}]{event.summary}[/{style}] "
        f"[dim]{when} UTC · {event.source.value.lower()} · {event.detail}[/dim]\n"
        f"  {event.link}"
    )


def _events_table(events: list[Event], title: str) -> Table:
    table = Table(title=title)
    table.add_column("Time (UTC)", style="dim")
    table.add_column("Kind", style="cyan")
    table.add_column("Summary")
    table.add_column("Source")
    table.add_column("Signature", style="dim", max_width=24)
    for ev in events:
        table.add_row(
            ev.when.strftime("%Y-%m-%d %H:%M"),
            ev.kind.value,
            ev.summary,
            ev.source.value,
            ev.signature,
        )
    return table


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """BuilderWatch — program deploy and multisig creation feed."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    configure_logging(
        level=cfg.observability.log_level,
        fmt=cfg.observability.log_format,
    )


# ─── WATCH ───────────────────────────────────────────────────────────

@cli.command()
@click.option("--duration", default=0.0, help="Stop after N seconds (0 = run until interrupted)")
@click.pass_context
def watch(ctx: click.Context, duration: float) -> None:
    """Backfill history, then print new events as they arrive."""
    cfg: BuilderWatchConfig = ctx.obj["config"]

    console.print("[bold green]BUILDERWATCH[/bold green]")
    for t in cfg.targets:
        console.print(f"  {t.kind.value:<9} {t.label or '-':<10} {t.address}")
    console.print()

    async def _watch() -> None:
        from builderwatch.engine.monitor import ChainEventMonitor

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError):
                pass  # Windows

        monitor = ChainEventMonitor(cfg)
        monitor.subscribe(lambda ev: console.print(_event_line(ev)))

        def _progress(p: ScanProgress) -> None:
            if p.total and (p.current == p.total or p.current % 100 == 0):
                console.print(f"[dim]{p.target}: {p.current}/{p.total} scanned[/dim]")

        monitor.scanner.on_progress(_progress)
        monitor.listener.on_state_change(
            lambda s: console.print(f"[yellow]stream: {s.value}[/yellow]")
        )

        async with monitor:
            try:
                await asyncio.wait_for(stop.wait(), timeout=duration or None)
            except asyncio.TimeoutError:
                pass
            console.print(f"\n[bold]{monitor.status_text}[/bold] — {len(monitor.snapshot())} events")

    _run(_watch())


# ─── BACKFILL ────────────────────────────────────────────────────────

@cli.command()
@click.option("--limit", default=None, type=int, help="Signatures per target (default from config)")
@click.option("--json", "as_json", is_flag=True, help="Print the feed as JSON")
@click.pass_context
def backfill(ctx: click.Context, limit: int | None, as_json: bool) -> None:
    """Run one historical scan and print the resulting feed."""
    cfg: BuilderWatchConfig = ctx.obj["config"]
    if limit:
        cfg = cfg.model_copy(update={"backfill": cfg.backfill.model_copy(update={"signature_limit": limit})})

    async def _backfill() -> tuple[list[Event], Any]:
        from builderwatch.connectors.solana_rpc import SolanaRPCClient
        from builderwatch.engine.backfill import BackfillScanner
        from builderwatch.engine.event_store import EventStore

        store = EventStore()
        client = SolanaRPCClient(
            cfg.rpc,
            batch_size=cfg.backfill.batch_size,
            batch_delay_ms=cfg.backfill.batch_delay_ms,
        )
        scanner = BackfillScanner(
            client,
            store,
            cfg.watch_targets(),
            signature_limit=cfg.backfill.signature_limit,
            lookback_days=cfg.backfill.lookback_days,
        )
        try:
            report = await scanner.run()
        finally:
            await client.close()
        return store.snapshot(), report

    events, report = _run(_backfill())

    if as_json:
        console.print_json(json.dumps([e.to_dict() for e in events], default=str))
        return

    console.print(_events_table(events, f"Backfill ({len(events)} events)"))
    for tr in report.targets:
        if tr.ok:
            console.print(f"[green]✓[/green] {tr.target.label}: {tr.processed}/{tr.discovered} scanned, {tr.events} events")
        else:
            console.print(
                f"[red]✗[/red] {tr.target.label}: {tr.processed}/{tr.discovered} scanned, "
                f"{tr.abandoned} abandoned — {tr.error}"
            )
    calls = metrics.counter("rpc.calls")
    console.print(f"[dim]{int(calls)} RPC calls, state {report.state}[/dim]")


# ─── TARGETS ─────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def targets(ctx: click.Context) -> None:
    """List configured watch targets."""
    cfg: BuilderWatchConfig = ctx.obj["config"]
    table = Table(title="Watch Targets")
    table.add_column("Kind", style="cyan")
    table.add_column("Label")
    table.add_column("Address", style="dim")
    for t in cfg.watch_targets():
        table.add_row(t.kind.value, t.label, t.address)
    console.print(table)


if __name__ == "__main__":
    cli()
