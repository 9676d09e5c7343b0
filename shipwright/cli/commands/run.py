"""``shipwright run REF`` — execute the pipeline for a branch or tag.

Exit codes: 0 when the run succeeded, is degraded, or is parked at a
manual gate; 1 when a job failed; 2 when the definition is invalid.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from shipwright.config import ShipwrightSettings
from shipwright.core.git import GitError, context_for
from shipwright.core.job_graph import ConfigError
from shipwright.core.orchestrator import Orchestrator
from shipwright.models.runs import RunResult, RunStatus
from shipwright.monitor.projection import StatusProjection
from shipwright.monitor.renderer import StatusRenderer

console = Console()

EXIT_OK = 0
EXIT_JOB_FAILED = 1
EXIT_CONFIG_ERROR = 2

_OK_STATUSES = frozenset({
    RunStatus.SUCCESS, RunStatus.DEGRADED, RunStatus.PENDING_APPROVAL,
})


def exit_code_for(status: RunStatus) -> int:
    return EXIT_OK if status in _OK_STATUSES else EXIT_JOB_FAILED


def report(orchestrator: Orchestrator, result: RunResult) -> None:
    """Print the run table and a one-line outcome."""
    projection = StatusProjection(orchestrator.ledger, orchestrator.graph)
    StatusRenderer(console=console).print_snapshot(projection.snapshot(result.run_id))
    if result.status == RunStatus.PENDING_APPROVAL:
        for job in result.pending_approvals:
            console.print(
                f"[cyan]Awaiting approval:[/cyan] {job}  "
                f"[dim](shipwright approve {job} --run {result.run_id})[/dim]"
            )


def run_cmd(
    ref: str = typer.Argument(..., help="Branch or tag name to run the pipeline for."),
    sha: str = typer.Option(
        None, "--sha", help="Commit SHA. Resolved with git when omitted.",
    ),
    tag: bool = typer.Option(
        None, "--tag/--branch", help="Force the ref kind instead of asking git.",
    ),
    actor: str = typer.Option(None, "--actor", help="Who triggered the run."),
    pipeline: Path = typer.Option(
        None, "--pipeline", "-f", help="Pipeline file (default: shipwright.yml).",
    ),
    auto_approve: list[str] = typer.Option(
        [], "--approve", "-a",
        help="Approve this manual job as soon as it is reached (repeatable).",
    ),
) -> None:
    """Run the pipeline for REF."""
    settings = ShipwrightSettings()
    try:
        orchestrator = Orchestrator(pipeline or settings.pipeline_file, settings=settings)
        ctx = context_for(
            ref,
            sha=sha,
            tag=tag,
            actor=actor,
            cwd=orchestrator.pipeline_path.resolve().parent,
        )
    except (ConfigError, GitError) as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=EXIT_CONFIG_ERROR)

    result = orchestrator.start(ctx)
    pending = set(auto_approve)
    while result.status == RunStatus.PENDING_APPROVAL and pending & set(result.pending_approvals):
        job = next(j for j in result.pending_approvals if j in pending)
        pending.discard(job)
        console.print(f"[cyan]Approving[/cyan] {job}")
        result = orchestrator.approve(job, result.run_id)

    report(orchestrator, result)
    raise typer.Exit(code=exit_code_for(result.status))
