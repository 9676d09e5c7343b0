"""``shipwright status`` — per-stage, per-job state of a run.

A pure read of the Run Ledger.  With ``--env`` it lists the instances of
an environment instead, optionally reconciled against the live hosts.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from shipwright.config import ShipwrightSettings
from shipwright.core import definition
from shipwright.core.job_graph import ConfigError
from shipwright.core.orchestrator import Orchestrator
from shipwright.core.run_ledger import RunLedger, UnknownRunError
from shipwright.monitor.projection import StatusProjection
from shipwright.monitor.renderer import StatusRenderer

console = Console()


def status_cmd(
    run_id: str = typer.Option(
        None, "--run", "-r", help="Run to show. Defaults to the latest run.",
    ),
    list_runs: bool = typer.Option(
        False, "--list", help="List recent runs instead of showing one.",
    ),
    live: bool = typer.Option(
        False, "--live", "-L", help="Keep redrawing from the ledger (Ctrl+C to exit).",
    ),
    environment: str = typer.Option(
        None, "--env", "-e", help="Show the instances of this environment.",
    ),
    reconcile: bool = typer.Option(
        False, "--reconcile", help="With --env: ask the hosts what is actually running.",
    ),
    pipeline: Path = typer.Option(
        None, "--pipeline", "-f", help="Pipeline file (for --env).",
    ),
) -> None:
    """Show the state of a run."""
    settings = ShipwrightSettings()
    renderer = StatusRenderer(console=console)

    if environment:
        try:
            orchestrator = Orchestrator(pipeline or settings.pipeline_file, settings=settings)
            instances = orchestrator.instances(environment, reconcile=reconcile)
        except ConfigError as exc:
            console.print(f"[bold red]Configuration error:[/bold red] {exc}")
            raise typer.Exit(code=2)
        console.print(renderer.render_instances(environment, instances))
        return

    ledger_path = settings.resolved_ledger_path
    if not ledger_path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {ledger_path}")
        console.print("[dim]Start a run first with: shipwright run <ref>[/dim]")
        raise typer.Exit(code=1)
    ledger = RunLedger(ledger_path)

    if list_runs:
        table = Table(title="Recent runs", header_style="bold cyan")
        table.add_column("Run")
        table.add_column("Ref")
        table.add_column("Commit")
        table.add_column("Status")
        table.add_column("Started")
        for record in ledger.list_runs():
            table.add_row(
                record.run_id,
                record.context.ref_name,
                record.context.short_sha,
                record.status,
                record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
        console.print(table)
        return

    try:
        record = ledger.get_run(run_id) if run_id else ledger.latest_run()
    except UnknownRunError:
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        raise typer.Exit(code=1)
    if record is None:
        console.print("[dim]No runs recorded yet.[/dim]")
        raise typer.Exit(code=1)

    graph = None
    if record.pipeline_path:
        try:
            _, graph = definition.load(record.pipeline_path)
        except ConfigError:
            # The file changed since the run; fall back to ledger order.
            graph = None
    projection = StatusProjection(ledger, graph)

    if live:
        renderer.render_live(record.run_id, projection)
    else:
        renderer.print_snapshot(projection.snapshot(record.run_id))
