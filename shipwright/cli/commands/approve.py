"""``shipwright approve JOB`` — release a manual gate and resume the run.

The run is restored from the ledger, so this works from a different
process (or machine sharing the state directory) than ``run``.
"""

from __future__ import annotations

import typer
from rich.console import Console

from shipwright.cli.commands.run import (
    EXIT_CONFIG_ERROR,
    EXIT_JOB_FAILED,
    exit_code_for,
    report,
)
from shipwright.config import ShipwrightSettings
from shipwright.core.job_graph import ConfigError
from shipwright.core.orchestrator import Orchestrator
from shipwright.core.run_ledger import UnknownRunError
from shipwright.core.scheduler import ApprovalError

console = Console()


def approve_cmd(
    job_name: str = typer.Argument(..., help="Manual job to approve."),
    run_id: str = typer.Option(
        None, "--run", "-r",
        help="Run to resume. Defaults to the latest run awaiting approval.",
    ),
) -> None:
    """Approve a manual job and continue its run."""
    settings = ShipwrightSettings()
    try:
        orchestrator, record = Orchestrator.for_run(run_id, settings=settings)
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=EXIT_CONFIG_ERROR)
    except (ApprovalError, UnknownRunError) as exc:
        console.print(f"[bold red]Cannot approve:[/bold red] {exc}")
        raise typer.Exit(code=EXIT_JOB_FAILED)

    try:
        result = orchestrator.approve(job_name, record.run_id)
    except ApprovalError as exc:
        console.print(f"[bold red]Cannot approve:[/bold red] {exc}")
        raise typer.Exit(code=EXIT_JOB_FAILED)

    console.print(f"[green]Approved[/green] {job_name} in run {record.run_id}")
    report(orchestrator, result)
    raise typer.Exit(code=exit_code_for(result.status))
