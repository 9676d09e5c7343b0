"""``shipwright validate`` — load the definition and print the plan.

With ``--ref`` the plan shows which jobs the gates admit for that ref,
without running anything.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from shipwright.config import ShipwrightSettings
from shipwright.core import definition
from shipwright.core.job_graph import ConfigError, JobGraph
from shipwright.models.context import RefKind, RunContext

console = Console()


def validate_cmd(
    pipeline: Path = typer.Option(
        None, "--pipeline", "-f", help="Pipeline file (default: shipwright.yml).",
    ),
    ref: str = typer.Option(None, "--ref", help="Preview gates for this ref."),
    tag: bool = typer.Option(False, "--tag", help="Treat --ref as a tag."),
) -> None:
    """Validate the pipeline definition."""
    settings = ShipwrightSettings()
    path = pipeline or settings.pipeline_file
    try:
        pipeline_def, graph = definition.load(path)
        plan = list(graph.topological_order())
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=2)

    ctx = None
    if ref:
        ctx = RunContext(
            commit_sha="0" * 40,
            ref_name=ref,
            ref_kind=RefKind.TAG if tag else RefKind.BRANCH,
        )

    table = Table(title=f"Plan for {path}", header_style="bold cyan")
    table.add_column("Stage")
    table.add_column("Job")
    table.add_column("When")
    table.add_column("Action")
    table.add_column("Needs")
    if ctx is not None:
        table.add_column(f"Runs for {ref}", justify="center")

    for stage, jobs in plan:
        label = f"{stage.name} (always)" if stage.always else stage.name
        for i, job in enumerate(jobs):
            row = [
                label if i == 0 else "",
                job.name,
                job.when.value,
                job.action.value if job.action else "-",
                ", ".join(job.needs) or "-",
            ]
            if ctx is not None:
                row.append("[green]yes[/green]" if JobGraph.gate(job, ctx) else "[dim]no[/dim]")
            table.add_row(*row)
        table.add_section()

    console.print(table)
    console.print(
        f"[green]Valid:[/green] {len(pipeline_def.stages)} stages, {len(graph)} jobs, "
        f"{len(pipeline_def.environments)} environments"
    )
