"""Rich terminal renderer for run status.

Turns ``RunSnapshot`` into Rich renderables, with color-coded job states
and an optional continuous ``Rich.Live`` mode.

Color scheme
------------
- green     : SUCCESS
- red       : FAILED
- yellow    : RUNNING, DEGRADED
- cyan      : MANUAL (awaiting approval)
- dim       : CREATED, SKIPPED
- magenta   : CANCELED
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from shipwright.models.instances import Instance
from shipwright.models.jobs import JobState

if TYPE_CHECKING:
    from shipwright.monitor.projection import RunSnapshot, StatusProjection


# ---------------------------------------------------------------------------
# State -> Rich style mapping
# ---------------------------------------------------------------------------

_STATE_STYLES: dict[JobState, str] = {
    JobState.SUCCESS: "bold green",
    JobState.FAILED: "bold red",
    JobState.RUNNING: "bold yellow",
    JobState.DEGRADED: "yellow",
    JobState.MANUAL: "bold cyan",
    JobState.CREATED: "dim",
    JobState.SKIPPED: "dim",
    JobState.CANCELED: "magenta",
}

_STATE_ICONS: dict[JobState, str] = {
    JobState.SUCCESS: "[green]SUCCESS[/green]",
    JobState.FAILED: "[bold red]FAILED[/bold red]",
    JobState.RUNNING: "[yellow]RUNNING[/yellow]",
    JobState.DEGRADED: "[yellow]DEGRADED[/yellow]",
    JobState.MANUAL: "[cyan]MANUAL[/cyan]",
    JobState.CREATED: "[dim]CREATED[/dim]",
    JobState.SKIPPED: "[dim]SKIPPED[/dim]",
    JobState.CANCELED: "[magenta]CANCELED[/magenta]",
}

_RUN_STATUS_STYLES: dict[str, str] = {
    "success": "green",
    "degraded": "yellow",
    "failed": "bold red",
    "pending_approval": "cyan",
    "running": "yellow",
    "canceled": "magenta",
}


class StatusRenderer:
    """Renders ``RunSnapshot`` as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Single snapshot render
    # ------------------------------------------------------------------

    def render_snapshot(self, snapshot: RunSnapshot) -> Panel:
        """Render a RunSnapshot as a Panel containing the job table."""
        table = self._build_job_table(snapshot)

        style = _RUN_STATUS_STYLES.get(snapshot.status, "")
        ctx = snapshot.context
        summary_parts: list[str] = [
            f"[bold]Run:[/bold] {snapshot.run_id}",
            f"[bold]Ref:[/bold] {ctx.ref_kind.value} {ctx.ref_name} @ {ctx.short_sha}",
            f"[bold]Status:[/bold] [{style}]{snapshot.status}[/{style}]",
            f"[bold]Progress:[/bold] {snapshot.completed_count}/{snapshot.total_jobs}",
        ]
        if snapshot.pending_approvals:
            summary_parts.append(
                f"[cyan][bold]Awaiting approval:[/bold] "
                f"{', '.join(snapshot.pending_approvals)}[/cyan]"
            )
        summary = "  |  ".join(summary_parts)

        return Panel(
            Group(table, Text(""), Text.from_markup(summary)),
            title="[bold]Shipwright[/bold]",
            subtitle=f"Last updated: {snapshot.last_updated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="blue",
            padding=(1, 2),
        )

    def _build_job_table(self, snapshot: RunSnapshot) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Stage", min_width=10)
        table.add_column("Job", min_width=20)
        table.add_column("State", min_width=12, justify="center")
        table.add_column("Details", min_width=20, overflow="fold")
        table.add_column("At", width=10)

        for stage in snapshot.stages:
            for i, job in enumerate(stage.jobs):
                name_style = _STATE_STYLES.get(job.state, "")
                table.add_row(
                    stage.name if i == 0 else "",
                    f"[{name_style}]{job.name}[/{name_style}]",
                    _STATE_ICONS.get(job.state, job.state.value),
                    Text(job.detail) if job.detail else Text("-", style="dim"),
                    job.entered_at.strftime("%H:%M:%S") if job.entered_at else "",
                )
            table.add_section()
        return table

    def render_instances(self, environment: str, instances: list[Instance]) -> Table:
        table = Table(
            title=f"Instances of {environment}",
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("Instance")
        table.add_column("Container")
        table.add_column("Host")
        table.add_column("Ports")
        table.add_column("Artifact")
        for inst in instances:
            table.add_row(
                inst.name,
                inst.container_name,
                inst.host_binding.host,
                ", ".join(str(p) for p in inst.host_binding.ports) or "-",
                inst.current_artifact_key or "[dim]none[/dim]",
            )
        return table

    # ------------------------------------------------------------------
    # Continuous live rendering
    # ------------------------------------------------------------------

    def render_live(
        self,
        run_id: str,
        projection: StatusProjection,
        *,
        refresh_hz: float = 2.0,
    ) -> None:
        """Re-read the ledger and redraw until Ctrl+C."""
        interval = 1.0 / max(refresh_hz, 0.1)

        with Live(console=self.console, refresh_per_second=refresh_hz) as live:
            try:
                while True:
                    live.update(self.render_snapshot(projection.snapshot(run_id)))
                    time.sleep(interval)
            except KeyboardInterrupt:
                live.update(self.render_snapshot(projection.snapshot(run_id)))

    # ------------------------------------------------------------------
    # Standalone print
    # ------------------------------------------------------------------

    def print_snapshot(self, snapshot: RunSnapshot) -> None:
        self.console.print(self.render_snapshot(snapshot))
