"""optiloop CLI: operator commands for the loop and the federation."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from optiloop.config import settings

console = Console()

app = typer.Typer(
    name="optiloop",
    help="optiloop -- autonomous optimization loop and tenant federation.",
    no_args_is_help=True,
)


@app.command("serve")
def serve():
    """Run the HTTP surface, the autonomy loop and federation."""
    from optiloop.serve import main as serve_main
    asyncio.run(serve_main())


@app.command("init-db")
def init_db():
    """Create the workspace and apply database migrations."""
    from optiloop.persistence.database import Database

    async def _init() -> None:
        settings.db_path.parent.mkdir(parents=True, exist_ok=True)
        db = Database(str(settings.db_path))
        await db.initialize()
        await db.close()

    asyncio.run(_init())
    console.print(Panel(
        f"[green]Database ready at {settings.db_path}[/green]",
        title="optiloop",
        border_style="cyan",
    ))


@app.command("trust")
def trust():
    """Show the current trust score and its inputs."""
    from optiloop.runtime import Runtime, run_async

    async def _trust():
        runtime = await Runtime.create()
        try:
            return await runtime.trust_scorer.compute()
        finally:
            await runtime.close()

    score = run_async(_trust())
    m = score.metrics
    color = "green" if score.score >= 80 else "yellow" if score.score >= 60 else "red"
    console.print(Panel(
        f"[bold {color}]{score.score}[/bold {color}] / 100\n\n"
        f"Recommendations:  {m.total_recommendations}\n"
        f"Success rate:     {m.success_rate:.1%}\n"
        f"Rollback rate:    {m.rollback_rate:.1%}\n"
        f"Violation rate:   {m.policy_violation_rate:.1%}",
        title="Trust Score",
        border_style="cyan",
    ))


@app.command("loop-once")
def loop_once(
    backlog: int = typer.Option(None, "--backlog", help="Override the sampled backlog size"),
    latency: float = typer.Option(None, "--latency", help="Override average latency (ms)"),
):
    """Run one dry-run cycle of the autonomy loop. No event is dispatched."""
    from optiloop.autonomy.loop import TelemetryOverrides
    from optiloop.runtime import Runtime, run_async

    async def _cycle():
        runtime = await Runtime.create()
        try:
            return await runtime.control_loop.run_cycle(
                overrides=TelemetryOverrides(backlog_size=backlog, avg_latency_ms=latency),
                emit_event=False,
            )
        finally:
            await runtime.close()

    result = run_async(_cycle())
    if not result.enabled:
        console.print("[yellow]Autonomy loop is disabled.[/yellow]")
        return

    table = Table(title="Agent priorities")
    table.add_column("Agent", style="cyan")
    table.add_column("Weight", justify="right")
    table.add_column("Confidence", justify="right", style="dim")
    for p in result.priorities:
        table.add_row(p.agent.value, f"{p.weight:.1%}", f"{p.confidence:.2f}")

    console.print(table)
    console.print(Panel(
        f"Interval:     {result.interval_ms / 60_000:.2f}m\n"
        f"Concurrency:  {result.concurrency}\n"
        f"Recovery:     {result.recovery.action if result.recovery else '-'}\n\n"
        f"{result.summary}",
        title="Cycle",
        border_style="cyan",
    ))


@app.command("federation-status")
def federation_status(
    probe: bool = typer.Option(False, "--probe", help="Probe every peer before reporting"),
):
    """Show federation configuration and peer health."""
    from optiloop.federation.bus import FederationBus

    bus = FederationBus()

    if probe:
        asyncio.run(bus.check_connections())

    status = bus.status()
    console.print(Panel(
        f"Enabled:  {'[green]yes[/green]' if status.enabled else '[red]no[/red]'}\n"
        f"Tenant:   {status.tenant_id}\n"
        f"Peers:    {len(status.endpoints)}",
        title="Federation",
        border_style="cyan",
    ))

    if not status.connections:
        console.print("[dim]No peer endpoints configured.[/dim]")
        return

    table = Table(title="Peers")
    table.add_column("Endpoint", style="cyan")
    table.add_column("Healthy")
    table.add_column("Latency", justify="right", style="dim")
    table.add_column("Error", style="red")
    for c in status.connections:
        table.add_row(
            c.endpoint,
            "[green]yes[/green]" if c.healthy else "[red]no[/red]",
            f"{c.last_latency_ms:.0f}ms" if c.last_latency_ms is not None else "-",
            c.error or "",
        )
    console.print(table)


def main():
    app()


if __name__ == "__main__":
    main()
